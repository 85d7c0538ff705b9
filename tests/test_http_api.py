"""
HTTP API tests (FastAPI TestClient against a fake backend)
"""
import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from agentkit.tools.tasks import build_default_registry
from config import GatewayConfig
from gateway.app import create_app
from gateway.http.middleware import SlidingWindowLimiter

from conftest import FakeBackend


def _sse_frames(body: str):
    frames = []
    for block in body.split("\n\n"):
        block = block.strip()
        if block.startswith("data: "):
            frames.append(json.loads(block[len("data: "):]))
    return frames


def _chat_scope(body: dict):
    payload = json.dumps(body).encode()
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/api/chat",
        "raw_path": b"/api/chat",
        "query_string": b"",
        "root_path": "",
        "headers": [
            (b"host", b"testserver"),
            (b"content-type", b"application/json"),
            (b"content-length", str(len(payload)).encode()),
        ],
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
    }
    return scope, payload


async def _until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached"
        await asyncio.sleep(0.01)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def client(backend):
    app = create_app(backend=backend, tool_registry=build_default_registry())
    with TestClient(app) as c:
        yield c


class TestSessionsAPI:

    def test_open_session(self, client):
        resp = client.post("/api/sessions")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "success"
        assert data["sessionId"]

    def test_open_session_with_client_id(self, client, backend):
        resp = client.post("/api/sessions", json={"sessionId": "board-42"})
        assert resp.status_code == 200
        assert resp.json()["sessionId"] == "board-42"
        assert backend.created == 1

    def test_open_session_rejects_bad_id(self, client):
        resp = client.post("/api/sessions", json={"sessionId": "has spaces"})
        assert resp.status_code == 400
        assert resp.json()["status"] == "error"

    def test_open_session_backend_down(self):
        app = create_app(backend=FakeBackend(fail_times=1), tool_registry=build_default_registry())
        with TestClient(app) as c:
            resp = c.post("/api/sessions")
        assert resp.status_code == 503
        assert resp.json()["error"]["message"].startswith("Failed to create session")

    def test_list_sessions(self, client):
        sid = client.post("/api/sessions").json()["sessionId"]
        data = client.get("/api/sessions").json()
        assert data["total"] == 1
        assert data["sessions"][0]["conversation_id"] == sid
        assert data["sessions"][0]["busy"] is False


class TestChatAPI:

    def test_stream_hello(self, client):
        sid = client.post("/api/sessions").json()["sessionId"]
        resp = client.post("/api/chat", json={"message": "hello", "sessionId": sid})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"] == "no-cache"
        assert _sse_frames(resp.text) == [
            {"type": "delta", "content": "Hel"},
            {"type": "delta", "content": "lo"},
            {"type": "done"},
        ]

    def test_two_turns_share_conversation(self, client, backend):
        sid = client.post("/api/sessions").json()["sessionId"]
        client.post("/api/chat", json={"message": "one", "sessionId": sid})
        client.post("/api/chat", json={"message": "two", "sessionId": sid})
        assert backend.created == 1
        assert backend.handles[sid].submissions == ["one", "two"]

    def test_chat_creates_unknown_session(self, client, backend):
        resp = client.post("/api/chat", json={"message": "hi", "session_id": "fresh"})
        assert _sse_frames(resp.text)[-1] == {"type": "done"}
        assert "fresh" in backend.handles

    def test_missing_message(self, client):
        resp = client.post("/api/chat", json={"sessionId": "abc"})
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Invalid message"

    def test_blank_message(self, client):
        resp = client.post("/api/chat", json={"message": "   ", "sessionId": "abc"})
        assert resp.status_code == 400

    def test_non_string_message(self, client):
        resp = client.post("/api/chat", json={"message": 42, "sessionId": "abc"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_request"

    def test_missing_session_id(self, client):
        resp = client.post("/api/chat", json={"message": "hi"})
        assert resp.status_code == 400
        assert "sessionId" in resp.json()["error"]["message"]

    def test_backend_down_streams_error_frame(self):
        app = create_app(backend=FakeBackend(fail_times=1), tool_registry=build_default_registry())
        with TestClient(app) as c:
            resp = c.post("/api/chat", json={"message": "hi", "sessionId": "s1"})
        assert resp.status_code == 200
        assert _sse_frames(resp.text) == [
            {"type": "error", "message": "Failed to initialise session"}
        ]

    def test_non_streaming_chat(self, client):
        resp = client.post("/api/chat", json={"message": "hi", "sessionId": "s1", "stream": False})
        assert resp.status_code == 200
        assert resp.json() == {"response": "Hello", "session_id": "s1", "status": "success"}

    def test_non_streaming_backend_error(self, client, backend):
        client.post("/api/sessions", json={"sessionId": "s1"})
        backend.handles["s1"].error = RuntimeError("model exploded")
        resp = client.post("/api/chat", json={"message": "hi", "sessionId": "s1", "stream": False})
        assert resp.status_code == 502
        assert resp.json()["error"]["message"] == "model exploded"


class TestStreamingTransport:
    """Drive the ASGI app directly to control when the client goes away."""

    @pytest.mark.asyncio
    async def test_client_disconnect_releases_gate(self, backend):
        app = create_app(backend=backend, tool_registry=build_default_registry())
        async with app.router.lifespan_context(app):
            service = app.state.conversation_service
            await service.open_conversation("s1")
            handle = backend.handles["s1"]
            handle.release = asyncio.Event()

            scope, payload = _chat_scope({"message": "long answer", "sessionId": "s1"})
            first_chunk = asyncio.Event()
            sent = []
            request_read = False

            async def receive():
                nonlocal request_read
                if not request_read:
                    request_read = True
                    return {"type": "http.request", "body": payload, "more_body": False}
                await first_chunk.wait()
                return {"type": "http.disconnect"}

            async def send(message):
                sent.append(message)
                if message["type"] == "http.response.body" and message.get("body"):
                    first_chunk.set()

            await asyncio.wait_for(app(scope, receive, send), timeout=2)

            assert sent[0]["status"] == 200
            await _until(lambda: not service.registry.gate.is_busy("s1"))
            assert not service.multiplexer.is_bound("s1")
            assert handle.cancelled is False

            handle.release.set()
            await _until(lambda: handle.completed == ["long answer"])
            assert handle.cancelled is False

    @pytest.mark.asyncio
    async def test_overlapping_turns_get_one_busy_frame(self, backend):
        app = create_app(backend=backend, tool_registry=build_default_registry())
        async with app.router.lifespan_context(app):
            service = app.state.conversation_service
            await service.open_conversation("s1")
            handle = backend.handles["s1"]
            handle.release = asyncio.Event()

            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
                first = asyncio.ensure_future(
                    ac.post("/api/chat", json={"message": "slow", "sessionId": "s1"})
                )
                await _until(lambda: service.registry.gate.is_busy("s1"))

                second = await ac.post("/api/chat", json={"message": "again", "sessionId": "s1"})
                assert second.status_code == 200
                assert _sse_frames(second.text) == [
                    {
                        "type": "error",
                        "message": "Conversation is busy: wait for the previous response to finish",
                    }
                ]

                handle.release.set()
                resp = await asyncio.wait_for(first, timeout=2)

            assert _sse_frames(resp.text) == [
                {"type": "delta", "content": "Hel"},
                {"type": "delta", "content": "lo"},
                {"type": "done"},
            ]
            assert handle.submissions == ["slow"]


class TestStatusAPI:

    def test_root_and_health(self, client):
        assert client.get("/").json()["status"] == "running"
        health = client.get("/health").json()
        assert health["status"] == "healthy"
        assert health["agent_ready"] is True

    def test_request_id_header(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "rid-1"})
        assert resp.headers["X-Request-ID"] == "rid-1"

    def test_tools(self, client):
        data = client.get("/api/tools").json()
        assert data["total"] == 3
        assert {t["name"] for t in data["tools"]} == {"perform_task", "lookup_info", "list_tasks"}

    def test_status_and_metrics(self, client):
        client.post("/api/chat", json={"message": "hi", "sessionId": "s1", "stream": False})

        status = client.get("/api/status").json()
        assert status["status"] == "running"
        assert status["conversations"] == 1
        assert status["busy_conversations"] == 0

        metrics = client.get("/api/metrics").json()
        assert metrics["turns"]["completed"] == 1
        assert metrics["deltas"]["forwarded"] == 2

        text = client.get("/api/metrics/prometheus").text
        assert "copilot_gateway_turns_completed_total 1" in text

    def test_event_history(self, client):
        client.post("/api/chat", json={"message": "hi", "sessionId": "s1", "stream": False})

        data = client.get("/api/events").json()
        kinds = [e["event"] for e in data["events"]]
        assert kinds == ["conversation.created", "turn.started", "turn.completed"]
        assert data["events"][-1]["payload"]["conversation_id"] == "s1"

        only = client.get("/api/events", params={"event": "turn.completed", "limit": 5}).json()
        assert only["total"] == 1
        assert client.get("/api/events", params={"event": "nope"}).status_code == 400

    def test_unknown_route_uses_error_envelope(self, client):
        resp = client.get("/api/nope")
        assert resp.status_code == 404
        assert resp.json()["status"] == "error"


class TestRateLimit:

    def test_limiter_window(self):
        limiter = SlidingWindowLimiter(requests=2, window_s=60)
        assert limiter.allow("a")
        assert limiter.allow("a")
        assert not limiter.allow("a")
        assert limiter.allow("b")

    def test_zero_budget_disables_limit(self):
        limiter = SlidingWindowLimiter(requests=0, window_s=60)
        assert all(limiter.allow("a") for _ in range(10))

    def test_chat_is_throttled_per_client(self):
        settings = GatewayConfig(server={"rate_limit_requests": 1})
        app = create_app(backend=FakeBackend(), settings=settings, tool_registry=build_default_registry())
        with TestClient(app) as c:
            assert c.post("/api/sessions").status_code == 200
            resp = c.post("/api/sessions")
            assert resp.status_code == 429
            assert resp.json()["error"]["code"] == "rate_limited"
            # Read-only routes are not counted
            assert c.get("/api/status").status_code == 200
