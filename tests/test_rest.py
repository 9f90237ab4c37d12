"""Integration tests for the HTTP surface.

WebSocket sessions run through starlette's TestClient against a real
multiplexer and runner; only the provider transport is faked.
"""

import pytest
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conduit.api.rest import build_user_turn, create_app
from conduit.api.runner import ChatRunner
from conduit.api.session import SessionMultiplexer
from tests.conftest import HANG, FakeTransport, answer

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_client(settings, dispatcher, agents):
    """Build a TestClient whose provider replays the given scripts."""

    def _make(*scripts):
        transport = FakeTransport(*scripts)
        runner = ChatRunner(settings, transport, dispatcher, agents)
        multiplexer = SessionMultiplexer(runner, settings)
        app = create_app(multiplexer, settings)
        return TestClient(app), transport, multiplexer

    return _make


def _connect(client: TestClient, session_id: str = "s1"):
    ws = client.websocket_connect(f"/sessions/{session_id}")
    return ws


# ---------------------------------------------------------------------------
# HTTP endpoints
# ---------------------------------------------------------------------------


class TestHttpEndpoints:
    def test_health(self, make_client):
        client, _, _ = make_client()
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_status(self, make_client, settings):
        client, _, _ = make_client()
        data = client.get("/status").json()
        assert data["sessions"] == 0
        assert data["active_runs"] == 0
        assert data["model"] == settings.model


# ---------------------------------------------------------------------------
# Session socket
# ---------------------------------------------------------------------------


class TestSessionSocket:
    def test_ready_then_stream(self, make_client):
        client, _, _ = make_client(answer("Hello"))
        with _connect(client) as ws:
            assert ws.receive_json() == {"type": "session:ready", "sessionId": "s1"}

            ws.send_json({"type": "stream:start", "requestId": "r1", "userContent": "Hi"})
            chunk = ws.receive_json()
            done = ws.receive_json()

        assert chunk == {"type": "stream:chunk", "requestId": "r1", "content": "Hello"}
        assert done["type"] == "stream:done"
        assert done["requestId"] == "r1"
        assert done["result"]["content"] == "Hello"

    def test_missing_request_id(self, make_client):
        client, _, _ = make_client()
        with _connect(client) as ws:
            ws.receive_json()
            ws.send_json({"type": "stream:start", "userContent": "Hi"})
            error = ws.receive_json()
        assert error["type"] == "stream:error"
        assert error["requestId"] is None
        assert "requestId" in error["error"]

    def test_empty_message_rejected(self, make_client):
        client, transport, _ = make_client()
        with _connect(client) as ws:
            ws.receive_json()
            ws.send_json({"type": "stream:start", "requestId": "r1", "userContent": "  "})
            error = ws.receive_json()
        assert error == {"type": "stream:error", "requestId": "r1", "error": "Message is empty"}
        assert transport.payloads == []

    def test_unknown_message_type(self, make_client):
        client, _, _ = make_client()
        with _connect(client) as ws:
            ws.receive_json()
            ws.send_json({"type": "stream:pause", "requestId": "r1"})
            error = ws.receive_json()
        assert error["error"] == "Unknown message type: stream:pause"

    def test_invalid_json(self, make_client):
        client, _, _ = make_client()
        with _connect(client) as ws:
            ws.receive_json()
            ws.send_text("not json")
            error = ws.receive_json()
        assert error["error"] == "Invalid JSON message"

    def test_busy_then_cancel(self, make_client):
        client, _, _ = make_client([HANG])
        with _connect(client) as ws:
            ws.receive_json()
            ws.send_json({"type": "stream:start", "requestId": "r1", "userContent": "one"})
            ws.send_json({"type": "stream:start", "requestId": "r2", "userContent": "two"})
            busy = ws.receive_json()
            ws.send_json({"type": "stream:cancel", "requestId": "r1"})
            cancelled = ws.receive_json()

        assert busy["type"] == "stream:error"
        assert busy["requestId"] == "r2"
        assert "r1" in busy["error"]
        assert cancelled == {"type": "stream:cancelled", "requestId": "r1"}

    def test_images_sent_as_content_parts(self, make_client):
        client, transport, _ = make_client(answer("a cat"))
        with _connect(client) as ws:
            ws.receive_json()
            ws.send_json({
                "type": "stream:start",
                "requestId": "r1",
                "userContent": "what is this?",
                "images": [{"id": "img1", "dataUrl": "data:image/png;base64,AAAA"}],
            })
            ws.receive_json()
            ws.receive_json()

        content = transport.payloads[0]["messages"][1]["content"]
        assert [p["type"] for p in content] == ["text", "image_url"]
        assert content[1]["image_url"]["url"] == "data:image/png;base64,AAAA"

    def test_session_disconnect(self, make_client):
        client, _, multiplexer = make_client()
        with _connect(client) as ws:
            ws.receive_json()
            assert multiplexer.session_count == 1
            ws.send_json({"type": "session:disconnect"})
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()
        assert multiplexer.session_count == 0


# ---------------------------------------------------------------------------
# build_user_turn
# ---------------------------------------------------------------------------


class TestBuildUserTurn:
    def test_plain_text(self):
        message = build_user_turn({"userContent": "hello"})
        assert message.role == "user"
        assert message.content == "hello"

    def test_image_only(self):
        message = build_user_turn({"images": [{"id": "i", "dataUrl": "data:image/png;base64,AA"}]})
        assert len(message.content) == 1
        assert message.content[0].image_url.detail == "auto"

    def test_bad_image(self):
        with pytest.raises(ValueError):
            build_user_turn({"userContent": "x", "images": [{"id": "i"}]})

    def test_empty(self):
        with pytest.raises(ValueError):
            build_user_turn({"userContent": ""})
