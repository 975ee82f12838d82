"""Per-client realtime session state.

State transitions::

    accept                 → IDLE
    first upstream message → CONNECTING
    dial succeeded         → READY
    renewal timer / expiry → RENEWING → READY
    upstream dropped       → IDLE      (next message redials)
    client gone / give up  → CLOSED

A :class:`RealtimeSession` exclusively owns its upstream socket and its
timers.  Everything here is touched only from the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

__all__ = ["SessionState", "StateTransition", "RealtimeSession", "new_client_id"]


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    RENEWING = "renewing"
    CLOSED = "closed"


@dataclass
class StateTransition:
    from_state: SessionState
    to_state: SessionState
    trigger: str
    timestamp: float = 0.0


def new_client_id() -> str:
    """``client_<epoch ms>_<random>``."""
    return f"client_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class RealtimeSession:
    """Bridge bookkeeping for one client socket.

    Parameters
    ----------
    client:
        Client socket (anything with ``send_json`` / ``close``).
    user_id:
        Authenticated user, or None for anonymous clients.
    rate_key:
        ``user_<id>`` or ``ip_<addr>``.
    clock:
        Monotonic clock; tests pin it.
    """

    def __init__(
        self,
        client: Any,
        user_id: Optional[str],
        rate_key: str,
        clock: Optional[Callable[[], float]] = None,
        client_id: Optional[str] = None,
    ) -> None:
        self._clock = clock or time.monotonic
        self.client = client
        self.client_id = client_id or new_client_id()
        self.user_id = user_id
        self.rate_key = rate_key
        self.connected_at = self._clock()

        self.state = SessionState.IDLE
        self.history: List[StateTransition] = []

        self.upstream: Any = None
        self.upstream_since: Optional[float] = None
        self.pump_task: Optional[asyncio.Task] = None
        self.connecting: Optional[asyncio.Task] = None
        self.reconnect_attempts = 0

        self.warning_task: Optional[asyncio.Task] = None
        self.renewal_task: Optional[asyncio.Task] = None

        self.active_response = False
        self.awaiting_tool_response = False
        self.session_config: Optional[Dict[str, Any]] = None

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED

    @property
    def has_timers(self) -> bool:
        return any(
            task is not None and not task.done() for task in (self.warning_task, self.renewal_task)
        )

    def upstream_age(self) -> Optional[float]:
        """Seconds since the current upstream session started."""
        if self.upstream_since is None:
            return None
        return self._clock() - self.upstream_since

    def transition(self, new_state: SessionState, trigger: str) -> None:
        if new_state is self.state:
            return
        old = self.state
        self.history.append(StateTransition(old, new_state, trigger, self._clock()))
        logger.debug(
            "[bridge] %s: %s → %s (trigger: %s)",
            self.client_id, old.value, new_state.value, trigger,
        )
        self.state = new_state

    def cancel_timers(self) -> None:
        for task in (self.warning_task, self.renewal_task):
            if task is not None and not task.done():
                task.cancel()
        self.warning_task = None
        self.renewal_task = None

    def snapshot(self) -> Dict[str, Any]:
        age = self.upstream_age()
        return {
            "id": self.client_id,
            "userId": self.user_id,
            "state": self.state.value,
            "connectedSeconds": round(self._clock() - self.connected_at, 1),
            "reconnectAttempts": self.reconnect_attempts,
            "locked": self.connecting is not None,
            "hasSession": self.upstream is not None,
            "sessionAgeMinutes": int(age // 60) if age is not None else None,
            "activeResponse": self.active_response,
        }
