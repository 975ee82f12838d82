"""Tests for the realtime audio bridge.

The client socket, the upstream socket, the connector and the sleep used
for backoff and session timers are all fakes, so nothing touches the
network and no test waits on a real timer.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, List, Optional

import pytest
from websockets.exceptions import ConnectionClosed

from daybook.errors import UpstreamError
from daybook.realtime.bridge import RealtimeBridge
from daybook.realtime.ratelimit import SlidingWindowRateLimiter
from daybook.realtime.session import SessionState
from daybook.realtime.tools import default_session_config, merge_session_config

# ─────────────────────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────────────────────


class FakeClient:
    """Client socket: records what the bridge sends, replays queued frames."""

    def __init__(self) -> None:
        self.sent: List[dict] = []
        self.accepted = False
        self.close_code: Optional[int] = None
        self.incoming: asyncio.Queue = asyncio.Queue()

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, message: dict) -> None:
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.close_code = code

    async def receive(self) -> dict:
        item = await self.incoming.get()
        if item is None:
            return {"type": "websocket.disconnect", "code": 1000}
        if isinstance(item, bytes):
            return {"type": "websocket.receive", "bytes": item}
        return {"type": "websocket.receive", "text": item}

    def errors(self) -> List[str]:
        return [m["error"]["message"] for m in self.sent if m.get("type") == "error"]

    def of_type(self, kind: str) -> List[dict]:
        return [m for m in self.sent if m.get("type") == kind]


class FakeUpstream:
    """Upstream socket: ``send`` records frames, iteration yields pushed ones."""

    def __init__(self) -> None:
        self.sent: List[dict] = []
        self.close_code: Optional[int] = None
        self.closed_with: Optional[int] = None
        self._frames: asyncio.Queue = asyncio.Queue()
        self.fail_sends = False

    async def send(self, raw: str) -> None:
        if self.fail_sends:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(raw))

    def push(self, message: dict) -> None:
        self._frames.put_nowait(json.dumps(message))

    def drop(self, code: int) -> None:
        self.close_code = code
        self._frames.put_nowait(None)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = code
        if self.close_code is None:
            self.close_code = code
        self._frames.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._frames.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def types(self) -> List[str]:
        return [frame["type"] for frame in self.sent]


class FakeConnector:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls = 0
        self.sockets: List[FakeUpstream] = []
        self.gate: Optional[asyncio.Event] = None
        # Sockets that connect but drop on their first send.
        self.broken = 0

    async def __call__(self, url: str, api_key: str, timeout_s: float) -> FakeUpstream:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            self.failures -= 1
            raise UpstreamError("connection refused")
        socket = FakeUpstream()
        if self.broken:
            self.broken -= 1
            socket.fail_sends = True
        self.sockets.append(socket)
        return socket


class FakeSleep:
    """Backoff delays return at once; session timers park until cancelled."""

    def __init__(self, immediate: Callable[[float], bool] = lambda delay: delay < 60) -> None:
        self.calls: List[float] = []
        self._immediate = immediate

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        if not self._immediate(delay):
            await asyncio.Event().wait()


async def eventually(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def bridge(actions, connector, sleep):
    return RealtimeBridge(actions, api_key="sk-test", connector=connector, sleep=sleep)


def _msg(kind: str, **fields: Any) -> str:
    return json.dumps({"type": kind, **fields})


# ─────────────────────────────────────────────────────────────
# Admission
# ─────────────────────────────────────────────────────────────


class TestAdmission:
    @pytest.mark.asyncio
    async def test_refuses_without_api_key(self, actions):
        bridge = RealtimeBridge(actions, api_key=None)
        client = FakeClient()
        await bridge.serve(client, "u1", "10.0.0.1")

        assert client.accepted is True
        assert client.sent == [
            {"type": "error", "error": {"type": "server_error", "message": "Audio service is unavailable"}}
        ]
        assert client.close_code == 1013
        assert bridge.sessions == {}

    @pytest.mark.asyncio
    async def test_rate_limit_per_user(self, actions, connector, sleep):
        bridge = RealtimeBridge(
            actions, api_key="sk-test", connector=connector, sleep=sleep, max_connections_per_minute=2
        )
        for _ in range(2):
            client = FakeClient()
            client.incoming.put_nowait(None)
            await bridge.serve(client, "u1", "10.0.0.1")
            assert client.accepted

        refused = FakeClient()
        await bridge.serve(refused, "u1", "10.0.0.1")
        assert refused.accepted is True
        assert refused.close_code == 1008

        # Other users have their own window.
        other = FakeClient()
        other.incoming.put_nowait(None)
        await bridge.serve(other, "u2", "10.0.0.1")
        assert other.accepted

    @pytest.mark.asyncio
    async def test_capacity(self, actions, connector, sleep):
        bridge = RealtimeBridge(actions, api_key="sk-test", connector=connector, sleep=sleep, max_clients=1)
        bridge.open_session(FakeClient(), "a", "user_a")

        client = FakeClient()
        await bridge.serve(client, "b", "10.0.0.2")
        assert client.accepted is True
        assert client.close_code == 1013
        await bridge.stop()

    def test_rate_key(self):
        assert RealtimeBridge.rate_key("u1", "1.2.3.4") == "user_u1"
        assert RealtimeBridge.rate_key(None, "1.2.3.4") == "ip_1.2.3.4"
        assert RealtimeBridge.rate_key(None, None) == "ip_unknown"

    @pytest.mark.asyncio
    async def test_serve_relays_until_disconnect(self, bridge, connector):
        client = FakeClient()
        client.incoming.put_nowait(_msg("input_audio_buffer.append", audio="AAAA"))
        client.incoming.put_nowait(None)
        await bridge.serve(client, "u1", "10.0.0.1")

        [upstream] = connector.sockets
        assert upstream.types() == ["input_audio_buffer.append"]
        assert upstream.closed_with == 1000
        assert bridge.sessions == {}

    @pytest.mark.asyncio
    async def test_binary_frames_are_rejected(self, bridge, connector):
        client = FakeClient()
        client.incoming.put_nowait(b"\x00\x01")
        client.incoming.put_nowait(_msg("input_audio_buffer.append", audio="AAAA"))
        client.incoming.put_nowait(None)
        await bridge.serve(client, "u1", "10.0.0.1")

        assert client.errors() == ["Binary frames are not supported"]
        assert connector.sockets[0].types() == ["input_audio_buffer.append"]


# ─────────────────────────────────────────────────────────────
# Upstream connection
# ─────────────────────────────────────────────────────────────


class TestUpstreamConnection:
    @pytest.mark.asyncio
    async def test_dials_lazily_and_primes_config(self, bridge, connector):
        session = bridge.open_session(FakeClient(), "u1", "user_u1")
        assert connector.calls == 0

        await bridge.handle_client_message(session, _msg("session.update", session={"voice": "verse"}))

        assert connector.calls == 1
        [upstream] = connector.sockets
        assert upstream.types() == ["session.update"]
        config = upstream.sent[0]["session"]
        assert config["voice"] == "verse"
        assert config["input_audio_format"] == "pcm16"
        assert session.state is SessionState.READY
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_concurrent_messages_share_one_dial(self, bridge, connector):
        connector.gate = asyncio.Event()
        session = bridge.open_session(FakeClient(), "u1", "user_u1")

        first = asyncio.create_task(
            bridge.handle_client_message(session, _msg("input_audio_buffer.append", audio="a"))
        )
        second = asyncio.create_task(
            bridge.handle_client_message(session, _msg("input_audio_buffer.append", audio="b"))
        )
        await eventually(lambda: connector.calls == 1)
        connector.gate.set()
        await asyncio.gather(first, second)

        assert connector.calls == 1
        assert connector.sockets[0].types() == ["input_audio_buffer.append"] * 2
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_backoff_then_success(self, actions, sleep):
        connector = FakeConnector(failures=2)
        bridge = RealtimeBridge(actions, api_key="sk-test", connector=connector, sleep=sleep)
        session = bridge.open_session(FakeClient(), "u1", "user_u1")

        await bridge.handle_client_message(session, _msg("input_audio_buffer.append", audio="a"))

        assert connector.calls == 3
        assert sleep.calls[:2] == [1.0, 2.0]
        assert session.reconnect_attempts == 0
        assert session.upstream is connector.sockets[0]
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, actions, sleep):
        connector = FakeConnector(failures=10)
        bridge = RealtimeBridge(actions, api_key="sk-test", connector=connector, sleep=sleep)
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")

        await bridge.handle_client_message(session, _msg("input_audio_buffer.append", audio="a"))

        assert connector.calls == 3
        assert client.errors() == ["Maximum connection attempts reached. Please refresh and try again."]
        assert client.close_code == 1011
        assert session.is_closed
        assert bridge.sessions == {}

    @pytest.mark.asyncio
    async def test_unexpected_close_notifies_and_redials(self, bridge, connector):
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")
        await bridge.handle_client_message(session, _msg("input_audio_buffer.append", audio="a"))

        connector.sockets[0].drop(1006)
        await eventually(lambda: session.upstream is None)

        assert session.state is SessionState.IDLE
        assert client.errors() == ["Speech service connection closed unexpectedly (1006)"]

        await bridge.handle_client_message(session, _msg("input_audio_buffer.append", audio="b"))
        assert connector.calls == 2
        assert connector.sockets[1].types() == ["input_audio_buffer.append"]
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_socket_dropped_while_priming_is_redialled(self, actions, sleep):
        connector = FakeConnector()
        connector.broken = 1
        bridge = RealtimeBridge(actions, api_key="sk-test", connector=connector, sleep=sleep)
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")

        await bridge.handle_client_message(session, _msg("session.update", session={"voice": "verse"}))

        assert connector.calls == 2
        assert connector.sockets[0].closed_with == 1000
        assert session.upstream is connector.sockets[1]
        assert connector.sockets[1].types() == ["session.update"]
        assert sleep.calls[:1] == [1.0]
        assert session.state is SessionState.READY
        assert client.errors() == []
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_priming_failures_use_up_attempts(self, actions, sleep):
        connector = FakeConnector()
        connector.broken = 10
        bridge = RealtimeBridge(actions, api_key="sk-test", connector=connector, sleep=sleep)
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")

        await bridge.handle_client_message(session, _msg("session.update", session={"voice": "verse"}))

        assert connector.calls == 3
        assert client.errors() == ["Maximum connection attempts reached. Please refresh and try again."]
        assert client.close_code == 1011
        assert bridge.sessions == {}


# ─────────────────────────────────────────────────────────────
# Client messages
# ─────────────────────────────────────────────────────────────


class TestClientMessages:
    @pytest.mark.asyncio
    async def test_invalid_frames(self, bridge, connector):
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")

        await bridge.handle_client_message(session, "{not json")
        await bridge.handle_client_message(session, json.dumps({"no": "type"}))
        await bridge.handle_client_message(session, _msg("dance"))
        await bridge.handle_client_message(session, _msg("input_audio_buffer.append"))

        assert client.errors() == [
            "Invalid message format",
            "Invalid message format",
            "Unknown message type: dance",
            "Missing audio data",
        ]
        assert connector.calls == 0
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_commit_requests_a_response(self, bridge, connector):
        session = bridge.open_session(FakeClient(), "u1", "user_u1")
        await bridge.handle_client_message(session, _msg("input_audio_buffer.commit"))

        assert connector.sockets[0].types() == ["input_audio_buffer.commit", "response.create"]
        assert session.active_response is True
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_one_response_at_a_time(self, bridge, connector):
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")

        await bridge.handle_client_message(session, _msg("response.create"))
        await bridge.handle_client_message(session, _msg("response.create"))

        upstream = connector.sockets[0]
        assert upstream.types() == ["response.create"]
        assert client.errors() == ["A response is already in progress"]

        await bridge.handle_upstream_frame(session, _msg("response.done"))
        assert session.active_response is False
        assert client.of_type("response.done")

        await bridge.handle_client_message(session, _msg("response.create"))
        assert upstream.types() == ["response.create", "response.create"]
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_item_create_and_cancel_pass_through(self, bridge, connector):
        session = bridge.open_session(FakeClient(), "u1", "user_u1")
        item = {"type": "message", "role": "user", "content": [{"type": "input_text", "text": "hi"}]}
        await bridge.handle_client_message(session, _msg("conversation.item.create", item=item))
        await bridge.handle_client_message(session, _msg("response.cancel"))

        upstream = connector.sockets[0]
        assert upstream.sent[0] == {"type": "conversation.item.create", "item": item}
        assert upstream.types()[-1] == "response.cancel"
        await bridge.stop()


# ─────────────────────────────────────────────────────────────
# Upstream frames & tools
# ─────────────────────────────────────────────────────────────


def _tool_call(name: str, arguments: dict, call_id: str = "call_1") -> str:
    return _msg(
        "response.function_call_arguments.done",
        name=name,
        call_id=call_id,
        arguments=json.dumps(arguments),
    )


class TestUpstreamFrames:
    @pytest.mark.asyncio
    async def test_frames_are_forwarded(self, bridge):
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")
        await bridge.handle_upstream_frame(session, _msg("response.audio.delta", delta="AAAA"))
        await bridge.handle_upstream_frame(session, "garbage")
        assert client.sent == [{"type": "response.audio.delta", "delta": "AAAA"}]

    @pytest.mark.asyncio
    async def test_upstream_error_is_reported(self, bridge):
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")
        session.active_response = True
        await bridge.handle_upstream_frame(session, _msg("error", error={"message": "boom"}))
        assert client.errors() == ["AI service error: boom"]
        assert session.active_response is False

    @pytest.mark.asyncio
    async def test_create_event_tool(self, bridge, connector, store):
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")
        await bridge.handle_client_message(session, _msg("input_audio_buffer.append", audio="a"))

        await bridge.handle_upstream_frame(
            session,
            _tool_call("create_calendar_event", {"title": "Lunch", "date": "2024-03-12", "time": "13:00"}),
        )

        [result] = client.of_type("tool.result")
        assert result["name"] == "create_calendar_event"
        assert result["result"]["type"] == "event_created"
        assert result["result"]["success"] is True

        upstream = connector.sockets[0]
        assert upstream.types()[-2:] == ["conversation.item.create", "response.create"]
        output = upstream.sent[-2]["item"]
        assert output["type"] == "function_call_output"
        assert output["call_id"] == "call_1"
        assert json.loads(output["output"])["action"] == "EVENT_CREATED"

        [event] = await store.get_events_by_date_range("u1", "2024-03-12", "2024-03-12")
        assert event.title == "Lunch"
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_query_tool_waits_for_active_response(self, bridge, connector):
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")
        await bridge.handle_client_message(session, _msg("response.create"))

        await bridge.handle_upstream_frame(
            session,
            _tool_call("query_calendar_events", {"start_date": "2024-03-12", "end_date": "2024-03-12"}),
        )
        upstream = connector.sockets[0]
        assert upstream.types() == ["response.create", "conversation.item.create"]
        assert session.awaiting_tool_response is True
        [result] = client.of_type("tool.result")
        assert result["result"]["action"] == "SHOW_EMPTY_SCHEDULE"

        await bridge.handle_upstream_frame(session, _msg("response.done"))
        assert upstream.types()[-1] == "response.create"
        assert session.awaiting_tool_response is False
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_unknown_tool(self, bridge):
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")
        await bridge.handle_upstream_frame(session, _tool_call("launch_rockets", {}))
        assert client.errors() == ["Unknown function: launch_rockets"]

    @pytest.mark.asyncio
    async def test_anonymous_tool_calls_use_default_user(self, bridge, store):
        session = bridge.open_session(FakeClient(), None, "ip_10.0.0.1")
        await bridge.handle_upstream_frame(
            session,
            _tool_call("create_calendar_event", {"title": "Run", "date": "2024-03-13", "time": "07:00"}),
        )
        events = await store.get_events_by_date_range("default", "2024-03-13", "2024-03-13")
        assert [e.title for e in events] == ["Run"]
        await bridge.stop()


# ─────────────────────────────────────────────────────────────
# Renewal, timers, cleanup
# ─────────────────────────────────────────────────────────────


class TestRenewal:
    @pytest.mark.asyncio
    async def test_renew_swaps_upstream_and_replays_config(self, bridge, connector):
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")
        await bridge.handle_client_message(session, _msg("session.update", session={"voice": "verse"}))
        old = session.upstream

        new = await bridge.renew_session(session)

        assert new is connector.sockets[1]
        assert session.upstream is new
        assert old.closed_with == 1000
        assert new.sent[0]["type"] == "session.update"
        assert new.sent[0]["session"]["voice"] == "verse"
        assert client.of_type("session.renewed")
        assert session.state is SessionState.READY
        assert client.close_code is None
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_session_expired_error_triggers_renewal(self, bridge, connector):
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")
        await bridge.handle_client_message(session, _msg("input_audio_buffer.append", audio="a"))

        await bridge.handle_upstream_frame(session, _msg("error", error={"code": "session_expired"}))
        await eventually(lambda: connector.calls == 2 and session.upstream is connector.sockets[-1])

        assert client.errors() == []
        await eventually(lambda: client.of_type("session.renewed"))
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_failed_renewal_closes_client(self, bridge, connector):
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")
        await bridge.handle_client_message(session, _msg("input_audio_buffer.append", audio="a"))
        connector.failures = 10

        assert await bridge.renew_session(session) is None
        assert client.errors() == ["Session renewal failed. Please refresh the page."]
        assert client.close_code == 1011
        assert session.is_closed

    @pytest.mark.asyncio
    async def test_warning_timer(self, actions, connector):
        sleep = FakeSleep(immediate=lambda delay: delay < 60 or delay == 3000.0)
        bridge = RealtimeBridge(actions, api_key="sk-test", connector=connector, sleep=sleep)
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")
        await bridge.handle_client_message(session, _msg("input_audio_buffer.append", audio="a"))

        await eventually(lambda: client.of_type("session.warning"))
        [warning] = client.of_type("session.warning")
        assert warning["timeRemaining"] == 300000
        assert "5 minutes" in warning["message"]
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_timers_warn_then_renew(self, actions, connector):
        fired: List[float] = []

        def first_time_only(delay: float) -> bool:
            if delay < 60:
                return True
            if delay in fired:
                return False
            fired.append(delay)
            return True

        sleep = FakeSleep(immediate=first_time_only)
        bridge = RealtimeBridge(actions, api_key="sk-test", connector=connector, sleep=sleep)
        client = FakeClient()
        session = bridge.open_session(client, "u1", "user_u1")
        await bridge.handle_client_message(session, _msg("input_audio_buffer.append", audio="a"))

        await eventually(lambda: client.of_type("session.renewed"))
        kinds = [m["type"] for m in client.sent]
        assert kinds.index("session.warning") < kinds.index("session.renewed")
        assert connector.sockets[0].closed_with == 1000
        assert session.upstream is connector.sockets[1]

        await bridge.handle_client_message(session, _msg("input_audio_buffer.append", audio="b"))
        assert connector.sockets[0].types() == ["input_audio_buffer.append"]
        assert connector.sockets[1].types() == ["input_audio_buffer.append"]
        await bridge.stop()


class TestCleanup:
    @pytest.mark.asyncio
    async def test_cleanup_cancels_active_response_and_closes(self, bridge, connector):
        session = bridge.open_session(FakeClient(), "u1", "user_u1")
        await bridge.handle_client_message(session, _msg("response.create"))
        upstream = connector.sockets[0]
        assert session.has_timers

        await bridge.cleanup(session, "test")
        assert upstream.types()[-1] == "response.cancel"
        assert upstream.closed_with == 1000
        assert not session.has_timers
        assert bridge.sessions == {}

        # Second call is a no-op.
        await bridge.cleanup(session, "again")
        assert upstream.types().count("response.cancel") == 1

    @pytest.mark.asyncio
    async def test_closed_session_ignores_messages(self, bridge, connector):
        session = bridge.open_session(FakeClient(), "u1", "user_u1")
        await bridge.cleanup(session, "test")
        await bridge.handle_client_message(session, _msg("input_audio_buffer.append", audio="a"))
        assert connector.calls == 0

    @pytest.mark.asyncio
    async def test_stop_closes_every_client(self, bridge):
        clients = [FakeClient(), FakeClient()]
        for i, client in enumerate(clients):
            bridge.open_session(client, f"u{i}", f"user_u{i}")
        await bridge.stop()
        assert [c.close_code for c in clients] == [1001, 1001]
        assert bridge.sessions == {}


class TestStats:
    @pytest.mark.asyncio
    async def test_idle_bridge(self, bridge):
        stats = bridge.stats()
        assert stats["activeConnections"] == 0
        assert stats["healthStatus"] == "idle"
        assert stats["connections"] == []

    @pytest.mark.asyncio
    async def test_connected_session(self, bridge):
        session = bridge.open_session(FakeClient(), "u1", "user_u1")
        await bridge.handle_client_message(session, _msg("input_audio_buffer.append", audio="a"))

        stats = bridge.stats()
        assert stats["activeConnections"] == 1
        assert stats["upstreamConnections"] == 1
        assert stats["activeSessions"] == 1
        assert stats["activeSessionTimers"] == 1
        assert stats["healthStatus"] == "healthy"
        [snapshot] = stats["connections"]
        assert snapshot["userId"] == "u1"
        assert snapshot["hasSession"] is True
        assert snapshot["state"] == "ready"
        await bridge.stop()


class TestHelpers:
    def test_sliding_window(self):
        now = [0.0]
        limiter = SlidingWindowRateLimiter(2, 60.0, clock=lambda: now[0])
        assert limiter.allow("k") and limiter.allow("k")
        assert not limiter.allow("k")
        now[0] = 60.0
        assert limiter.allow("k")

    def test_prune_drops_idle_keys(self):
        now = [0.0]
        limiter = SlidingWindowRateLimiter(1, 60.0, clock=lambda: now[0])
        limiter.allow("a")
        now[0] = 120.0
        limiter.prune()
        assert len(limiter) == 0

    def test_session_config_merge(self):
        merged = merge_session_config({"voice": "verse"})
        assert merged["voice"] == "verse"
        assert merged["tools"] == default_session_config()["tools"]
        assert merge_session_config(None) == default_session_config()
