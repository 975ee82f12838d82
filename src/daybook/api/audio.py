"""Realtime audio endpoints.

GET /api/assistant/audio-status — bridge configuration and live stats
WS  /api/realtime-audio          — audio session (``?userId=`` optional)

WebSocket auth uses a ``token`` query parameter, since browsers cannot
set an Authorization header on a WebSocket handshake:
    ws://localhost:8000/api/realtime-audio?userId=alice&token=<DAYBOOK_API_TOKEN>
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, WebSocket

from daybook.api.auth import is_auth_enabled, require_auth, token_matches
from daybook.realtime.tools import SUPPORTED_AUDIO_FORMATS

logger = logging.getLogger(__name__)

router = APIRouter(tags=["audio"])

WEBSOCKET_PATH = "/api/realtime-audio"


@router.get("/api/assistant/audio-status", summary="Audio bridge status")
async def audio_status(
    request: Request,
    _token: Optional[str] = Depends(require_auth),
) -> Dict[str, Any]:
    bridge = request.app.state.container.bridge
    return {
        "audioEnabled": bridge.enabled,
        "upstreamConfigured": bridge.enabled,
        "websocketEndpoint": WEBSOCKET_PATH,
        "stats": bridge.stats(),
        "supportedFormats": list(SUPPORTED_AUDIO_FORMATS),
        "maxConnections": bridge.max_clients,
    }


@router.websocket(WEBSOCKET_PATH)
async def realtime_audio(
    websocket: WebSocket,
    userId: Optional[str] = Query(default=None),
    token: Optional[str] = Query(default=None),
) -> None:
    if is_auth_enabled() and not token_matches(token):
        # Accepted first so the client sees 4001 rather than a bare 403.
        await websocket.accept()
        await websocket.close(code=4001, reason="Unauthorized")
        return

    client_ip = websocket.client.host if websocket.client else None
    logger.info("[bridge] Audio client connecting: user=%s ip=%s", userId or "anonymous", client_ip)
    bridge = websocket.app.state.container.bridge
    await bridge.serve(websocket, userId or None, client_ip)
