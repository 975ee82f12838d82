"""Text chat endpoints.

POST /api/assistant/chat            — one dispatcher turn
GET  /api/assistant/conversations   — recent turns with their ids
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from daybook.api.auth import current_user
from daybook.api.models import ChatRequest, ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/assistant", tags=["chat"])


@router.post(
    "/chat",
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        429: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
    summary="Send a chat message",
    description="Run one turn through the extractor, falling back to the conversational responder.",
)
async def chat(
    body: ChatRequest,
    request: Request,
    user_id: str = Depends(current_user),
) -> Any:
    client_ip = request.client.host if request.client else "unknown"
    limiter = request.app.state.chat_limiter
    if not limiter.allow(client_ip):
        logger.warning("[RATE_LIMIT] %s exceeded %d req/min", client_ip, limiter.capacity)
        return JSONResponse(
            status_code=429,
            content=ErrorResponse(error="Too many requests. Please wait a moment.").model_dump(),
            headers={"Retry-After": "60"},
        )

    container = request.app.state.container
    reply = await container.dispatcher.process(user_id, body.message, body.sessionId)
    payload: Dict[str, Any] = {"success": True}
    payload.update(reply.to_dict())
    return payload


@router.get(
    "/conversations",
    responses={401: {"model": ErrorResponse}},
    summary="Recent conversation turns",
)
async def conversations(
    request: Request,
    sessionId: Optional[str] = Query(default=None),
    limit: int = Query(default=10, ge=1, le=100),
    user_id: str = Depends(current_user),
) -> Dict[str, Any]:
    memory = request.app.state.container.memory
    history = await memory.get_conversation_history(user_id, sessionId, limit)
    return {"conversations": [c.to_dict() for c in history]}
