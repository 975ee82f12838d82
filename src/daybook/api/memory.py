"""Memory endpoints.

GET    /api/assistant/memory          — ?key=, ?category=, or a summary
POST   /api/assistant/memory          — upsert
PUT    /api/assistant/memory          — update an existing key
DELETE /api/assistant/memory          — {clearAll} or {category}
GET    /api/assistant/memory/export   — export document
POST   /api/assistant/memory/import   — import an export document
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.responses import JSONResponse

from daybook.api.auth import current_user
from daybook.api.models import ErrorResponse, MemoryDelete, MemoryImport, MemoryUpsert
from daybook.errors import ValidationError
from daybook.store.models import MemoryCategory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/assistant/memory", tags=["memory"])

_ERRORS = {400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}}


def _memory(request: Request) -> Any:
    return request.app.state.container.memory


@router.get("", responses={**_ERRORS, 404: {"model": ErrorResponse}}, summary="Read memories")
async def read_memory(
    request: Request,
    key: Optional[str] = Query(default=None),
    category: Optional[str] = Query(default=None),
    user_id: str = Depends(current_user),
) -> Any:
    memory = _memory(request)
    if key:
        record = await memory.get_memory_record(user_id, key)
        if record is None:
            return JSONResponse(status_code=404, content={"error": f"Memory not found: {key}"})
        return {"memory": record.to_dict()}
    if category:
        records = await memory.get_memories_by_category(user_id, category, 50)
        return {"category": category, "memories": [r.to_dict() for r in records]}
    return {"summary": await memory.summarize(user_id)}


@router.post("", responses=_ERRORS, summary="Store a memory")
async def store_memory(
    body: MemoryUpsert,
    request: Request,
    user_id: str = Depends(current_user),
) -> Dict[str, Any]:
    if not body.key or body.value is None:
        raise ValidationError("key and value are required")
    record = await _memory(request).store_memory(
        user_id,
        body.key,
        body.value,
        body.category or MemoryCategory.CONTEXTUAL.value,
        1.0 if body.relevanceScore is None else body.relevanceScore,
    )
    return {"success": True, "memory": record.to_dict()}


@router.put("", responses={**_ERRORS, 404: {"model": ErrorResponse}}, summary="Update a memory")
async def update_memory(
    body: MemoryUpsert,
    request: Request,
    user_id: str = Depends(current_user),
) -> Dict[str, Any]:
    if not body.key or body.value is None:
        raise ValidationError("key and value are required")
    record = await _memory(request).update_memory(
        user_id, body.key, body.value, body.category, body.relevanceScore
    )
    return {"success": True, "memory": record.to_dict()}


@router.delete("", responses={**_ERRORS, 501: {"model": ErrorResponse}}, summary="Delete memories")
async def delete_memory(
    request: Request,
    body: Optional[MemoryDelete] = Body(default=None),
    user_id: str = Depends(current_user),
) -> Any:
    body = body or MemoryDelete()
    memory = _memory(request)
    if body.clearAll:
        deleted = await memory.clear_user_memories(user_id)
        return {"success": True, "deleted": deleted}
    if body.category:
        deleted = await memory.clear_user_memories(user_id, body.category)
        return {"success": True, "deleted": deleted, "category": body.category}
    if body.key:
        return JSONResponse(
            status_code=501,
            content={"error": "Deleting a single memory is not supported yet"},
        )
    raise ValidationError("Specify clearAll, category, or key")


@router.get("/export", responses=_ERRORS, summary="Export memories")
async def export_memories(request: Request, user_id: str = Depends(current_user)) -> Dict[str, Any]:
    return await _memory(request).export_user_memories(user_id)


@router.post("/import", responses=_ERRORS, summary="Import memories")
async def import_memories(
    body: MemoryImport,
    request: Request,
    user_id: str = Depends(current_user),
) -> Dict[str, Any]:
    imported = await _memory(request).import_user_memories(user_id, body.model_dump())
    return {"success": True, "imported": imported}
