"""Tests for the Daybook REST API.

Tests cover:
  - GET  /api/health
  - POST /api/assistant/chat (rate limit, validation, user scoping)
  - GET  /api/assistant/conversations
  - /api/assistant/memory (read, upsert, update, delete, export, import)
  - POST /api/assistant/feedback
  - GET  /api/assistant/audio-status
  - WS   /api/realtime-audio
  - Authentication (Bearer token, WebSocket token)
  - Error handling
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, List

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from daybook.api.auth import reset_token_cache
from daybook.api.server import INTERNAL_ERROR_MESSAGE, create_app
from daybook.config import Settings
from daybook.container import ServiceContainer

# ─────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────


class RecordingUpstream:
    """Minimal upstream socket: records frames, never speaks first."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self._closed = asyncio.Event()

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self._closed.set()

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        await self._closed.wait()
        raise StopAsyncIteration


class RecordingConnector:
    def __init__(self) -> None:
        self.sockets: List[RecordingUpstream] = []

    async def __call__(self, url: str, api_key: str, timeout_s: float) -> RecordingUpstream:
        socket = RecordingUpstream()
        self.sockets.append(socket)
        return socket


@pytest.fixture
def make_client(clock, monkeypatch):
    """Factory for a TestClient over an in-memory store."""
    monkeypatch.delenv("DAYBOOK_API_TOKEN", raising=False)
    reset_token_cache()

    def _make(raise_server_exceptions: bool = True, connector=None, **overrides: Any) -> TestClient:
        settings = Settings(database_url="sqlite:///:memory:", **overrides)
        container = ServiceContainer.build(settings, clock=clock, connector=connector)
        return TestClient(create_app(container=container), raise_server_exceptions=raise_server_exceptions)

    yield _make
    reset_token_cache()


@pytest.fixture
def client(make_client):
    with make_client() as c:
        yield c


def _wait_for_history(client: TestClient, count: int, headers: Dict[str, str] = None) -> List[dict]:
    """Turns are logged in the background; poll until they land."""
    deadline = time.monotonic() + 2.0
    while True:
        turns = client.get("/api/assistant/conversations", headers=headers or {}).json()["conversations"]
        if len(turns) >= count or time.monotonic() > deadline:
            return turns
        time.sleep(0.02)


# ─────────────────────────────────────────────────────────────
# Health
# ─────────────────────────────────────────────────────────────


class TestHealth:
    def test_health_ok(self, client):
        r = client.get("/api/health")
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "ok"
        assert body["audio_enabled"] is False
        assert "version" in body


# ─────────────────────────────────────────────────────────────
# Chat
# ─────────────────────────────────────────────────────────────


class TestChat:
    def test_create_event(self, client):
        r = client.post(
            "/api/assistant/chat",
            json={"message": "Schedule lunch with Alice tomorrow at 1pm", "sessionId": "web-1"},
        )
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["action"] == "EVENT_CREATED"
        assert body["source"] == "nlp"
        assert body["response"] == 'Perfect! I\'ve scheduled "Lunch" for Tuesday, March 12 at 1:00 PM.'

    def test_empty_message(self, client):
        r = client.post("/api/assistant/chat", json={"message": "   "})
        assert r.status_code == 400
        assert r.json() == {"error": "Message is required"}

    def test_missing_message(self, client):
        r = client.post("/api/assistant/chat", json={})
        assert r.status_code == 400
        assert r.json() == {"error": "Message is required"}

    def test_oversized_message_is_a_400(self, client):
        r = client.post("/api/assistant/chat", json={"message": "x" * 5000})
        assert r.status_code == 400
        assert "error" in r.json()

    def test_rate_limit(self, make_client):
        with make_client(rate_limit_rpm=2) as client:
            for _ in range(2):
                assert client.post("/api/assistant/chat", json={"message": "hi"}).status_code == 200
            r = client.post("/api/assistant/chat", json={"message": "hi"})
        assert r.status_code == 429
        assert r.headers["Retry-After"] == "60"
        assert r.json() == {"error": "Too many requests. Please wait a moment."}

    def test_conversations_are_per_user(self, client):
        alice = {"X-User-Id": "alice"}
        client.post("/api/assistant/chat", json={"message": "hello"}, headers=alice)

        turns = _wait_for_history(client, 1, alice)
        assert [t["userMessage"] for t in turns] == ["hello"]
        assert client.get(
            "/api/assistant/conversations", headers={"X-User-Id": "bob"}
        ).json() == {"conversations": []}

    def test_user_id_query_param(self, client):
        client.post("/api/assistant/chat?userId=carol", json={"message": "hello"})
        deadline = time.monotonic() + 2.0
        while True:
            turns = client.get("/api/assistant/conversations?userId=carol").json()["conversations"]
            if turns or time.monotonic() > deadline:
                break
            time.sleep(0.02)
        assert len(turns) == 1


# ─────────────────────────────────────────────────────────────
# Memory
# ─────────────────────────────────────────────────────────────


class TestMemory:
    def test_upsert_and_read(self, client):
        r = client.post(
            "/api/assistant/memory",
            json={"key": "preferred_meeting_time", "value": "10:00", "category": "preferences"},
        )
        assert r.status_code == 200
        assert r.json()["memory"]["value"] == "10:00"

        r = client.get("/api/assistant/memory", params={"key": "preferred_meeting_time"})
        assert r.status_code == 200
        assert r.json()["memory"]["category"] == "preferences"

        r = client.get("/api/assistant/memory", params={"category": "preferences"})
        assert [m["key"] for m in r.json()["memories"]] == ["preferred_meeting_time"]

        summary = client.get("/api/assistant/memory").json()["summary"]
        assert [m["key"] for m in summary["preferences"]] == ["preferred_meeting_time"]

    def test_missing_key_is_404(self, client):
        r = client.get("/api/assistant/memory", params={"key": "nope"})
        assert r.status_code == 404
        assert "nope" in r.json()["error"]

    def test_upsert_requires_key_and_value(self, client):
        r = client.post("/api/assistant/memory", json={"key": "k"})
        assert r.status_code == 400
        assert r.json() == {"error": "key and value are required"}

    def test_bad_category(self, client):
        r = client.post("/api/assistant/memory", json={"key": "k", "value": 1, "category": "gossip"})
        assert r.status_code == 400

    def test_update_unknown_key_is_404(self, client):
        r = client.put("/api/assistant/memory", json={"key": "nope", "value": 1})
        assert r.status_code == 404

    def test_update_existing(self, client):
        client.post("/api/assistant/memory", json={"key": "k", "value": 1, "category": "personal"})
        r = client.put("/api/assistant/memory", json={"key": "k", "value": 2})
        assert r.status_code == 200
        assert r.json()["memory"]["value"] == 2
        assert r.json()["memory"]["category"] == "personal"

    def test_delete_variants(self, client):
        client.post("/api/assistant/memory", json={"key": "a", "value": 1, "category": "preferences"})
        client.post("/api/assistant/memory", json={"key": "b", "value": 1, "category": "contextual"})

        r = client.request("DELETE", "/api/assistant/memory", json={"key": "a"})
        assert r.status_code == 501

        r = client.request("DELETE", "/api/assistant/memory", json={"category": "preferences"})
        assert r.json() == {"success": True, "deleted": 1, "category": "preferences"}

        r = client.request("DELETE", "/api/assistant/memory", json={"clearAll": True})
        assert r.json() == {"success": True, "deleted": 1}

        r = client.request("DELETE", "/api/assistant/memory")
        assert r.status_code == 400

    def test_export_then_import(self, client):
        client.post("/api/assistant/memory", json={"key": "a", "value": {"x": 1}, "category": "preferences"})
        document = client.get("/api/assistant/memory/export").json()
        assert document["userId"] == "default"
        assert len(document["memories"]) == 1

        r = client.post("/api/assistant/memory/import", json=document, headers={"X-User-Id": "bob"})
        assert r.json() == {"success": True, "imported": 1}
        r = client.get("/api/assistant/memory", params={"key": "a"}, headers={"X-User-Id": "bob"})
        assert r.json()["memory"]["value"] == {"x": 1}


# ─────────────────────────────────────────────────────────────
# Feedback
# ─────────────────────────────────────────────────────────────


class TestFeedback:
    def test_feedback_on_a_turn(self, client):
        client.post("/api/assistant/chat", json={"message": "Schedule lunch with Alice tomorrow at 1pm"})
        [turn] = _wait_for_history(client, 1)

        r = client.post(
            "/api/assistant/feedback",
            json={"conversationId": turn["id"], "feedbackType": "correction", "feedbackText": "make it 2pm"},
        )
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["feedbackId"] > 0
        assert "time_preference_correction" in body["learningPoints"]

    def test_invalid_type(self, client):
        r = client.post("/api/assistant/feedback", json={"conversationId": 1, "feedbackType": "meh"})
        assert r.status_code == 400
        assert "Invalid feedback type" in r.json()["error"]

    def test_missing_fields(self, client):
        r = client.post("/api/assistant/feedback", json={})
        assert r.status_code == 400


# ─────────────────────────────────────────────────────────────
# Audio
# ─────────────────────────────────────────────────────────────


class TestAudio:
    def test_status_without_key(self, client):
        body = client.get("/api/assistant/audio-status").json()
        assert body["audioEnabled"] is False
        assert body["websocketEndpoint"] == "/api/realtime-audio"
        assert body["maxConnections"] == 100
        assert body["stats"]["activeConnections"] == 0
        assert "pcm16" in body["supportedFormats"]

    def test_socket_refused_without_key(self, client):
        with client.websocket_connect("/api/realtime-audio") as ws:
            frame = ws.receive_json()
            assert frame == {
                "type": "error",
                "error": {"type": "server_error", "message": "Audio service is unavailable"},
            }
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
        assert exc.value.code == 1013

    def test_socket_relays_to_upstream(self, make_client):
        connector = RecordingConnector()
        with make_client(connector=connector, speech_api_key="sk-test") as client:
            with client.websocket_connect("/api/realtime-audio?userId=alice") as ws:
                ws.send_json({"type": "input_audio_buffer.append", "audio": "AAAA"})
                # The error reply orders this after the append.
                ws.send_json({"type": "dance"})
                assert ws.receive_json()["error"]["message"] == "Unknown message type: dance"

        [upstream] = connector.sockets
        assert upstream.sent == [{"type": "input_audio_buffer.append", "audio": "AAAA"}]
        assert upstream.closed is True

    def test_rate_limited_socket_sees_close_code(self, make_client):
        connector = RecordingConnector()
        with make_client(connector=connector, speech_api_key="sk-test", max_connections_per_minute=1) as client:
            with client.websocket_connect("/api/realtime-audio?userId=alice"):
                pass
            with client.websocket_connect("/api/realtime-audio?userId=alice") as ws:
                with pytest.raises(WebSocketDisconnect) as exc:
                    ws.receive_json()
        assert exc.value.code == 1008


# ─────────────────────────────────────────────────────────────
# Authentication
# ─────────────────────────────────────────────────────────────


class TestAuth:
    def test_token_required(self, make_client):
        with make_client(api_token="secret") as client:
            assert client.get("/api/health").status_code == 200
            assert client.post("/api/assistant/chat", json={"message": "hi"}).status_code == 401
            r = client.post(
                "/api/assistant/chat",
                json={"message": "hi"},
                headers={"Authorization": "Bearer wrong"},
            )
            assert r.status_code == 401
            r = client.post(
                "/api/assistant/chat",
                json={"message": "hi"},
                headers={"Authorization": "Bearer secret"},
            )
            assert r.status_code == 200

    def test_env_token(self, make_client, monkeypatch):
        monkeypatch.setenv("DAYBOOK_API_TOKEN", "from-env")
        with make_client() as client:
            assert client.get("/api/assistant/memory").status_code == 401
            r = client.get("/api/assistant/memory", headers={"Authorization": "Bearer from-env"})
            assert r.status_code == 200

    def test_socket_token(self, make_client):
        with make_client(api_token="secret") as client:
            with client.websocket_connect("/api/realtime-audio?token=bad") as ws:
                with pytest.raises(WebSocketDisconnect) as exc:
                    ws.receive_json()
            assert exc.value.code == 4001


# ─────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────


class TestErrors:
    def test_unexpected_error_is_generic_500(self, make_client):
        with make_client(raise_server_exceptions=False) as client:
            memory = client.app.state.container.memory

            async def explode(*args, **kwargs):
                raise RuntimeError("database on fire")

            memory.get_conversation_history = explode
            r = client.get("/api/assistant/conversations")
        assert r.status_code == 500
        assert r.json() == {"error": INTERNAL_ERROR_MESSAGE}
