"""Realtime audio bridge.

Per client socket, one :class:`RealtimeSession` and at most one upstream
socket to the speech model service::

    client ──frames──▶ bridge ──frames──▶ upstream
    client ◀──frames── bridge ◀──frames── upstream (pump task)

Upstream is dialled lazily on the first client frame, with capped
exponential backoff behind a single-flight task (``session.connecting``).
A warning timer and a renewal timer run per upstream session; renewal dials
a replacement, swaps the reference, then closes the old socket, so the
client socket never notices beyond a ``session.renewed`` notice.

Tool calls from the model go through the same
:class:`daybook.assistant.actions.ActionHandlers` as text turns.

Usage::

    bridge = RealtimeBridge(actions, api_key="sk-...")
    await bridge.serve(websocket, user_id="u1", client_ip="10.0.0.7")
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

from fastapi import WebSocketDisconnect
from websockets.exceptions import ConnectionClosed

from daybook.assistant.actions import ActionHandlers, ActionOutcome
from daybook.config import DEFAULT_SPEECH_API_URL, Settings
from daybook.errors import UpstreamError
from daybook.realtime.ratelimit import SlidingWindowRateLimiter
from daybook.realtime.session import RealtimeSession, SessionState
from daybook.realtime.tools import (
    CREATE_EVENT_TOOL,
    QUERY_EVENTS_TOOL,
    merge_session_config,
)
from daybook.realtime.upstream import Connector, close_code_of, connect_upstream

logger = logging.getLogger(__name__)

__all__ = ["RealtimeBridge"]

POLICY_VIOLATION = 1008
TRY_AGAIN_LATER = 1013
INTERNAL_ERROR = 1011
GOING_AWAY = 1001
NORMAL_CLOSURE = 1000


class RealtimeBridge:
    """Two-socket proxy between audio clients and the speech model service.

    Parameters
    ----------
    actions:
        Calendar action handlers used for tool calls.
    api_key:
        Speech service credential.  Without it the bridge refuses clients.
    url:
        Upstream realtime endpoint.
    connector:
        ``(url, api_key, timeout_s) -> socket``; defaults to
        :func:`connect_upstream`.
    clock / sleep:
        Monotonic clock and sleep used for timers and backoff; tests pin
        them.
    """

    def __init__(
        self,
        actions: ActionHandlers,
        api_key: Optional[str],
        url: str = DEFAULT_SPEECH_API_URL,
        connector: Optional[Connector] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        max_connections_per_minute: int = 10,
        max_clients: int = 100,
        warning_s: float = 3000.0,
        renewal_s: float = 3300.0,
        connect_timeout_s: float = 10.0,
        reconnect_base_s: float = 1.0,
        reconnect_max_attempts: int = 3,
        default_user_id: str = "default",
    ) -> None:
        self._actions = actions
        self._api_key = api_key
        self._url = url
        self._connector = connector or connect_upstream
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._max_clients = max_clients
        self._warning_s = warning_s
        self._renewal_s = renewal_s
        self._connect_timeout_s = connect_timeout_s
        self._reconnect_base_s = reconnect_base_s
        self._max_attempts = reconnect_max_attempts
        self._default_user_id = default_user_id
        self._limiter = SlidingWindowRateLimiter(max_connections_per_minute, 60.0, self._clock)
        self._sessions: Dict[str, RealtimeSession] = {}
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls, settings: Settings, actions: ActionHandlers, **overrides: Any
    ) -> "RealtimeBridge":
        options: Dict[str, Any] = dict(
            api_key=settings.speech_api_key,
            url=settings.speech_api_url,
            max_connections_per_minute=settings.max_connections_per_minute,
            max_clients=settings.max_audio_connections,
            warning_s=settings.session_warning_s,
            renewal_s=settings.session_renewal_s,
            connect_timeout_s=settings.upstream_connect_timeout_s,
            reconnect_base_s=settings.reconnect_base_s,
            reconnect_max_attempts=settings.reconnect_max_attempts,
            default_user_id=settings.default_user_id,
        )
        options.update(overrides)
        return cls(actions, **options)

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    @property
    def max_clients(self) -> int:
        return self._max_clients

    @property
    def sessions(self) -> Dict[str, RealtimeSession]:
        return dict(self._sessions)

    # ==================================================================
    # Client lifecycle
    # ==================================================================

    @staticmethod
    def rate_key(user_id: Optional[str], client_ip: Optional[str]) -> str:
        return f"user_{user_id}" if user_id else f"ip_{client_ip or 'unknown'}"

    async def serve(self, websocket: Any, user_id: Optional[str], client_ip: Optional[str]) -> None:
        """Run one client socket to completion."""
        # Accept before refusing: a close ahead of the handshake reaches the
        # client as HTTP 403, not as a close code.
        await websocket.accept()
        if not self.enabled:
            await websocket.send_json(_error_frame("Audio service is unavailable"))
            await websocket.close(code=TRY_AGAIN_LATER, reason="Audio service unavailable")
            return

        key = self.rate_key(user_id, client_ip)
        if not self._limiter.allow(key):
            logger.warning("[bridge] Rate limit exceeded for %s", key)
            await websocket.close(code=POLICY_VIOLATION, reason="Rate limit exceeded")
            return
        if len(self._sessions) >= self._max_clients:
            logger.warning("[bridge] At capacity (%d clients); refusing %s", self._max_clients, key)
            await websocket.close(code=TRY_AGAIN_LATER, reason="Server at capacity")
            return

        session = self.open_session(websocket, user_id, key)
        try:
            while not session.is_closed:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info("[bridge] %s: client disconnected", session.client_id)
                    break
                if message.get("text") is None:
                    await self._send_error(session, "Binary frames are not supported")
                    continue
                await self.handle_client_message(session, message["text"])
        finally:
            await self.cleanup(session, "client disconnected")

    def open_session(self, client: Any, user_id: Optional[str], rate_key: str) -> RealtimeSession:
        session = RealtimeSession(client, user_id, rate_key, clock=self._clock)
        self._sessions[session.client_id] = session
        logger.info("[bridge] %s: connected (%s)", session.client_id, rate_key)
        return session

    async def cleanup(
        self,
        session: RealtimeSession,
        reason: str,
        close_client: bool = False,
        code: int = NORMAL_CLOSURE,
    ) -> None:
        """Tear down everything the session owns.  Safe to call twice."""
        if session.is_closed:
            return
        session.transition(SessionState.CLOSED, reason)
        self._sessions.pop(session.client_id, None)
        session.cancel_timers()

        current = asyncio.current_task()
        connecting, session.connecting = session.connecting, None
        if connecting is not None and connecting is not current:
            connecting.cancel()

        upstream, pump = session.upstream, session.pump_task
        session.upstream = None
        session.pump_task = None
        session.upstream_since = None
        if upstream is not None:
            if session.active_response:
                await _send_quietly(upstream, {"type": "response.cancel"})
            if pump is not None and pump is not current:
                pump.cancel()
            await _close_upstream(upstream, "Client disconnected")

        session.active_response = False
        session.awaiting_tool_response = False
        session.reconnect_attempts = 0

        if close_client:
            try:
                await session.client.close(code=code)
            except (RuntimeError, WebSocketDisconnect):
                logger.debug("[bridge] %s: client already closed", session.client_id)
        logger.info("[bridge] %s: cleaned up (%s)", session.client_id, reason)

    async def stop(self) -> None:
        """Close every client; used on application shutdown."""
        for session in list(self._sessions.values()):
            await self.cleanup(session, "shutdown", close_client=True, code=GOING_AWAY)
        tasks, self._background = list(self._background), set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ==================================================================
    # Client → upstream
    # ==================================================================

    async def handle_client_message(self, session: RealtimeSession, raw: Any) -> None:
        if session.is_closed:
            return
        try:
            message = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except json.JSONDecodeError:
            await self._send_error(session, "Invalid message format")
            return
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            await self._send_error(session, "Invalid message format")
            return

        kind = message["type"]
        payload = message.get("data") if isinstance(message.get("data"), dict) else message
        handler = self._client_handlers.get(kind)
        if handler is None:
            logger.warning("[bridge] %s: unknown message type %r", session.client_id, kind)
            await self._send_error(session, f"Unknown message type: {kind}")
            return

        try:
            await handler(self, session, payload)
        except UpstreamError as exc:
            if session.is_closed:
                return
            logger.error("[bridge] %s: giving up on upstream: %s", session.client_id, exc)
            await self._send_error(
                session, "Maximum connection attempts reached. Please refresh and try again."
            )
            await self.cleanup(session, "upstream unavailable", close_client=True, code=INTERNAL_ERROR)

    async def _on_session_update(self, session: RealtimeSession, payload: Mapping[str, Any]) -> None:
        overrides = payload.get("session")
        if not isinstance(overrides, Mapping):
            overrides = {k: v for k, v in payload.items() if k != "type"}
        session.session_config = merge_session_config(overrides)
        if session.upstream is None and session.connecting is None:
            # A fresh dial primes the new socket with the stored config.
            await self.ensure_upstream(session)
            return
        await self._send_upstream(session, {"type": "session.update", "session": session.session_config})

    async def _on_audio_append(self, session: RealtimeSession, payload: Mapping[str, Any]) -> None:
        audio = payload.get("audio")
        if not audio:
            await self._send_error(session, "Missing audio data")
            return
        await self._send_upstream(session, {"type": "input_audio_buffer.append", "audio": audio})

    async def _on_audio_commit(self, session: RealtimeSession, payload: Mapping[str, Any]) -> None:
        await self._send_upstream(session, {"type": "input_audio_buffer.commit"})
        if not session.active_response:
            await self._create_response(session, {})

    async def _on_response_create(self, session: RealtimeSession, payload: Mapping[str, Any]) -> None:
        if session.active_response:
            await self._send_error(session, "A response is already in progress")
            return
        config = payload.get("response")
        await self._create_response(session, dict(config) if isinstance(config, Mapping) else {})

    async def _on_item_create(self, session: RealtimeSession, payload: Mapping[str, Any]) -> None:
        item = payload.get("item")
        if not isinstance(item, Mapping):
            item = {k: v for k, v in payload.items() if k != "type"}
        await self._send_upstream(session, {"type": "conversation.item.create", "item": dict(item)})

    async def _on_response_cancel(self, session: RealtimeSession, payload: Mapping[str, Any]) -> None:
        await self._send_upstream(session, {"type": "response.cancel"})

    _client_handlers: Dict[str, Callable[..., Awaitable[None]]] = {
        "session.update": _on_session_update,
        "input_audio_buffer.append": _on_audio_append,
        "input_audio_buffer.commit": _on_audio_commit,
        "response.create": _on_response_create,
        "conversation.item.create": _on_item_create,
        "response.cancel": _on_response_cancel,
    }

    async def _create_response(self, session: RealtimeSession, config: Dict[str, Any]) -> None:
        # Dial first: attaching a fresh upstream resets active_response.
        await self.ensure_upstream(session)
        session.active_response = True
        if not await self._send_upstream(session, {"type": "response.create", "response": config}):
            session.active_response = False

    async def _send_upstream(self, session: RealtimeSession, frame: Dict[str, Any]) -> bool:
        upstream = await self.ensure_upstream(session)
        try:
            await upstream.send(json.dumps(frame))
        except ConnectionClosed as exc:
            await self._upstream_lost(session, upstream, close_code_of(exc))
            return False
        return True

    # ==================================================================
    # Upstream connection
    # ==================================================================

    async def ensure_upstream(self, session: RealtimeSession) -> Any:
        """Current upstream socket, dialling once if there is none.

        Concurrent callers share one dial (or renewal) in flight.
        """
        if session.is_closed:
            raise UpstreamError(f"Session {session.client_id} is closed")
        if session.connecting is not None:
            return await asyncio.shield(session.connecting)
        if session.upstream is not None:
            return session.upstream
        session.connecting = asyncio.ensure_future(self._connect(session))
        return await asyncio.shield(session.connecting)

    async def _connect(self, session: RealtimeSession) -> Any:
        try:
            session.transition(SessionState.CONNECTING, "dial")
            upstream = await self._dial_with_backoff(session)
            if session.is_closed:
                await _close_upstream(upstream, "Client disconnected")
                raise UpstreamError(f"Session {session.client_id} closed while dialling")
            self._attach(session, upstream)
            session.transition(SessionState.READY, "connected")
            return upstream
        finally:
            session.connecting = None

    async def _dial_with_backoff(self, session: RealtimeSession) -> Any:
        last_error: Optional[Exception] = None
        while session.reconnect_attempts < self._max_attempts:
            attempt = session.reconnect_attempts
            if attempt:
                delay = self._reconnect_base_s * (2 ** (attempt - 1))
                logger.info(
                    "[bridge] %s: waiting %.1fs before dial %d/%d",
                    session.client_id, delay, attempt + 1, self._max_attempts,
                )
                await self._sleep(delay)
            session.reconnect_attempts += 1
            try:
                upstream = await self._connector(self._url, self._api_key or "", self._connect_timeout_s)
            except UpstreamError as exc:
                last_error = exc
                logger.warning(
                    "[bridge] %s: dial %d/%d failed: %s",
                    session.client_id, attempt + 1, self._max_attempts, exc,
                )
                continue
            try:
                await self._prime(session, upstream)
            except ConnectionClosed as exc:
                # Dropped before it was usable; counts as a failed dial.
                await _close_upstream(upstream, "Priming failed")
                last_error = exc
                logger.warning(
                    "[bridge] %s: upstream %d/%d closed while priming (code=%s)",
                    session.client_id, attempt + 1, self._max_attempts, close_code_of(exc),
                )
                continue
            session.reconnect_attempts = 0
            logger.info("[bridge] %s: upstream connected", session.client_id)
            return upstream
        raise UpstreamError(
            f"Max reconnection attempts ({self._max_attempts}) reached for {session.client_id}"
        ) from last_error

    async def _prime(self, session: RealtimeSession, upstream: Any) -> None:
        """Replay the client's session config onto a fresh upstream."""
        if session.session_config is not None:
            await upstream.send(json.dumps({"type": "session.update", "session": session.session_config}))

    def _attach(self, session: RealtimeSession, upstream: Any) -> None:
        session.upstream = upstream
        session.upstream_since = self._clock()
        session.active_response = False
        session.awaiting_tool_response = False
        session.pump_task = asyncio.ensure_future(self._pump(session, upstream))
        self._start_timers(session)

    async def _upstream_lost(self, session: RealtimeSession, upstream: Any, code: int) -> None:
        if session.upstream is not upstream or session.is_closed:
            return
        logger.info("[bridge] %s: upstream closed (code=%s)", session.client_id, code)
        session.upstream = None
        session.upstream_since = None
        session.pump_task = None
        session.active_response = False
        session.awaiting_tool_response = False
        session.cancel_timers()
        session.transition(SessionState.IDLE, "upstream_closed")
        if code != NORMAL_CLOSURE:
            await self._send_error(session, f"Speech service connection closed unexpectedly ({code})")

    # ==================================================================
    # Renewal
    # ==================================================================

    def _start_timers(self, session: RealtimeSession) -> None:
        session.cancel_timers()
        session.warning_task = asyncio.ensure_future(self._warn_later(session))
        session.renewal_task = asyncio.ensure_future(self._renew_later(session))

    async def _warn_later(self, session: RealtimeSession) -> None:
        await self._sleep(self._warning_s)
        remaining_ms = int((self._renewal_s - self._warning_s) * 1000)
        minutes = max(1, round(remaining_ms / 60000))
        await self._send_client(session, {
            "type": "session.warning",
            "message": (
                f"Your session will expire in {minutes} minutes. "
                "Your conversation will automatically continue with a new session."
            ),
            "timeRemaining": remaining_ms,
        })
        logger.info("[bridge] %s: session warning sent", session.client_id)

    async def _renew_later(self, session: RealtimeSession) -> None:
        await self._sleep(self._renewal_s)
        await self.renew_session(session, "renewal_timer")

    async def renew_session(self, session: RealtimeSession, reason: str = "renewal") -> Any:
        """Replace the upstream socket, keeping the client socket open.

        Returns the new upstream, or None if renewal failed (the session is
        then torn down).
        """
        if session.is_closed:
            return None
        if session.connecting is None:
            session.connecting = asyncio.ensure_future(self._renew(session, reason))
        try:
            return await asyncio.shield(session.connecting)
        except UpstreamError:
            return None

    async def _renew(self, session: RealtimeSession, reason: str) -> Any:
        try:
            logger.info("[bridge] %s: renewing upstream session (%s)", session.client_id, reason)
            session.transition(SessionState.RENEWING, reason)
            # Cancelling the timer task leaves this shielded renewal running.
            session.cancel_timers()
            old, old_pump = session.upstream, session.pump_task
            try:
                new = await self._dial_with_backoff(session)
            except UpstreamError as exc:
                logger.error("[bridge] %s: renewal failed: %s", session.client_id, exc)
                await self._send_error(session, "Session renewal failed. Please refresh the page.")
                await self.cleanup(session, "renewal failed", close_client=True, code=INTERNAL_ERROR)
                raise UpstreamError(str(exc)) from exc
            if session.is_closed:
                await _close_upstream(new, "Client disconnected")
                raise UpstreamError(f"Session {session.client_id} closed while renewing")

            # Swap first; frames still arriving on the old socket are dropped.
            self._attach(session, new)
            if old_pump is not None and old_pump is not asyncio.current_task():
                old_pump.cancel()
            if old is not None:
                await _close_upstream(old, "Session renewal")

            session.transition(SessionState.READY, "renewed")
            await self._send_client(session, {
                "type": "session.renewed",
                "message": "Session renewed successfully. You can continue your conversation.",
                "timestamp": int(time.time() * 1000),
            })
            logger.info("[bridge] %s: session renewed", session.client_id)
            return new
        finally:
            session.connecting = None

    # ==================================================================
    # Upstream → client
    # ==================================================================

    async def _pump(self, session: RealtimeSession, upstream: Any) -> None:
        code = NORMAL_CLOSURE
        try:
            async for raw in upstream:
                if session.upstream is not upstream:
                    return
                await self.handle_upstream_frame(session, raw)
            code = close_code_of(upstream)
        except ConnectionClosed as exc:
            code = close_code_of(exc)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[bridge] %s: upstream pump failed", session.client_id)
            code = INTERNAL_ERROR
        await self._upstream_lost(session, upstream, code)

    async def handle_upstream_frame(self, session: RealtimeSession, raw: Any) -> None:
        try:
            message = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except json.JSONDecodeError:
            logger.warning("[bridge] %s: undecodable upstream frame dropped", session.client_id)
            return
        if not isinstance(message, dict):
            return
        kind = message.get("type")

        if kind == "error":
            session.active_response = False
            error = message.get("error") or {}
            if error.get("code") == "session_expired":
                logger.warning("[bridge] %s: upstream session expired", session.client_id)
                self._spawn(self.renew_session(session, "session_expired"))
            else:
                logger.error("[bridge] %s: upstream error: %s", session.client_id, error)
                await self._send_error(session, f"AI service error: {error.get('message') or 'Unknown error'}")
            return

        await self._send_client(session, message)

        if kind == "response.done":
            session.active_response = False
            if session.awaiting_tool_response:
                session.awaiting_tool_response = False
                await self._create_response(session, {})
        elif kind == "response.function_call_arguments.done":
            await self._dispatch_tool(session, message)
        elif kind in ("input_audio_buffer.speech_started", "input_audio_buffer.speech_stopped"):
            logger.debug("[bridge] %s: %s", session.client_id, kind)
        elif kind in ("session.created", "response.created", "conversation.item.created", "response.audio.done"):
            logger.debug("[bridge] %s: %s", session.client_id, kind)

    # ==================================================================
    # Tool calls
    # ==================================================================

    async def _dispatch_tool(self, session: RealtimeSession, message: Mapping[str, Any]) -> None:
        name = message.get("name")
        raw_args = message.get("arguments") or "{}"
        try:
            args = json.loads(raw_args) if isinstance(raw_args, str) else raw_args
        except json.JSONDecodeError:
            args = None
        if not isinstance(args, dict):
            await self._send_error(session, f"Invalid arguments for {name}")
            return

        user_id = session.user_id or self._default_user_id
        outcome: ActionOutcome
        if name == CREATE_EVENT_TOOL:
            details = {k: args.get(k) for k in ("title", "date", "time", "duration", "description")}
            outcome = await self._actions.handle_create_event(user_id, details, source="audio")
        elif name == QUERY_EVENTS_TOOL:
            outcome = await self._actions.handle_query_events(
                user_id, args.get("start_date"), args.get("end_date"), source="audio"
            )
        else:
            logger.warning("[bridge] %s: unknown function call %r", session.client_id, name)
            await self._send_error(session, f"Unknown function: {name}")
            return

        result = outcome.as_result()
        await self._send_client(session, {"type": "tool.result", "name": name, "result": result})
        sent = await self._send_upstream(session, {
            "type": "conversation.item.create",
            "item": {
                "type": "function_call_output",
                "call_id": message.get("call_id"),
                "output": json.dumps(result),
            },
        })
        if not sent:
            return
        if session.active_response:
            session.awaiting_tool_response = True
        else:
            await self._create_response(session, {})

    # ==================================================================
    # Helpers
    # ==================================================================

    async def _send_client(self, session: RealtimeSession, message: Dict[str, Any]) -> None:
        if session.is_closed:
            return
        try:
            await session.client.send_json(message)
        except (RuntimeError, WebSocketDisconnect):
            logger.debug("[bridge] %s: client gone, dropped %s", session.client_id, message.get("type"))

    async def _send_error(self, session: RealtimeSession, text: str) -> None:
        await self._send_client(session, _error_frame(text))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ==================================================================
    # Statistics
    # ==================================================================

    def stats(self) -> Dict[str, Any]:
        sessions = list(self._sessions.values())
        ages = [age for age in (s.upstream_age() for s in sessions) if age is not None]
        self._limiter.prune()
        near_expiration = sum(1 for age in ages if age >= self._renewal_s)
        return {
            "activeConnections": len(sessions),
            "upstreamConnections": sum(1 for s in sessions if s.upstream is not None),
            "activeSessions": len(ages),
            "activeSessionTimers": sum(1 for s in sessions if s.has_timers),
            "sessionsNeedingRenewal": sum(1 for age in ages if age >= self._warning_s),
            "sessionsNearExpiration": near_expiration,
            "reconnectionAttempts": sum(1 for s in sessions if s.reconnect_attempts),
            "connectionLocks": sum(1 for s in sessions if s.connecting is not None),
            "rateLimitEntries": len(self._limiter),
            "averageSessionAgeMinutes": int(sum(ages) / len(ages) // 60) if ages else 0,
            "healthStatus": self._health_status(sessions, near_expiration),
            "connections": [s.snapshot() for s in sessions],
        }

    @staticmethod
    def _health_status(sessions: List[RealtimeSession], near_expiration: int) -> str:
        if near_expiration:
            return "warning_sessions_expiring"
        if any(s.reconnect_attempts >= 2 for s in sessions):
            return "warning_connection_issues"
        if not sessions:
            return "idle"
        return "healthy"


def _error_frame(text: str) -> Dict[str, Any]:
    return {"type": "error", "error": {"type": "server_error", "message": text}}


async def _send_quietly(upstream: Any, frame: Dict[str, Any]) -> None:
    try:
        await upstream.send(json.dumps(frame))
    except ConnectionClosed:
        logger.debug("[bridge] upstream already closed; %s not sent", frame.get("type"))


async def _close_upstream(upstream: Any, reason: str) -> None:
    try:
        await upstream.close(code=NORMAL_CLOSURE, reason=reason)
    except (ConnectionClosed, OSError):
        logger.debug("[bridge] upstream close raised; already gone")
