"""Speech model service connector.

The bridge only needs three things from an upstream socket: ``send(str)``,
async iteration over incoming text frames, and ``close(code, reason)``.
:func:`connect_upstream` returns a ``websockets`` client connection, which
provides all three; tests inject a fake connector instead.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from daybook.errors import UpstreamError

logger = logging.getLogger(__name__)

__all__ = ["Connector", "connect_upstream", "close_code_of"]

# (url, api_key, timeout_s) -> connected socket
Connector = Callable[[str, str, float], Awaitable[Any]]


async def connect_upstream(url: str, api_key: str, timeout_s: float = 10.0) -> Any:
    """Open an authenticated realtime socket; raises UpstreamError on failure."""
    headers = {
        "Authorization": f"Bearer {api_key}",
        "OpenAI-Beta": "realtime=v1",
    }
    try:
        return await asyncio.wait_for(
            connect(url, additional_headers=headers, open_timeout=timeout_s, max_size=None),
            timeout=timeout_s,
        )
    except asyncio.TimeoutError as exc:
        raise UpstreamError(f"Speech service connection timed out after {timeout_s:.0f}s") from exc
    except (OSError, WebSocketException) as exc:
        raise UpstreamError(f"Speech service connection failed: {exc}") from exc


def close_code_of(exc_or_socket: Any) -> int:
    """Close code from a ConnectionClosed exception or a closed socket (1006 if unknown)."""
    received = getattr(exc_or_socket, "rcvd", None)
    if received is not None and getattr(received, "code", None) is not None:
        return int(received.code)
    code = getattr(exc_or_socket, "close_code", None)
    return int(code) if code is not None else 1006
