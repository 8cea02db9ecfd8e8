"""Tests for the downstream session table, transport routing and health."""

from __future__ import annotations

import asyncio
import json
import uuid
from contextlib import asynccontextmanager

import pytest
from starlette.responses import JSONResponse
from starlette.testclient import TestClient

from mcp_vector_proxy.config.schema import IndexSettings, ProxyConfig
from mcp_vector_proxy.runtime.service import ProxyService
from mcp_vector_proxy.server.app import create_app
from mcp_vector_proxy.server.session import SessionManager, TransportKind
from mcp_vector_proxy.server.transport import SessionRouter, _new_sse_transport, _sse_session_id


# ── Helpers ──────────────────────────────────────────────────────────────


class _FakeServer:
    """Runs until the transport's stop event fires (passed as read stream)."""

    def __init__(self) -> None:
        self.runs = 0

    def create_initialization_options(self):
        return None

    async def run(self, read_stream, write_stream, options) -> None:
        self.runs += 1
        await read_stream.wait()


class _FakeStreamableTransport:
    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.stopped = asyncio.Event()
        self.requests: list[str] = []

    @asynccontextmanager
    async def connect(self):
        yield self.stopped, None

    async def handle_request(self, scope, receive, send) -> None:
        self.requests.append(scope["method"])
        await JSONResponse({"session": self.session_id})(scope, receive, send)

    async def terminate(self) -> None:
        self.stopped.set()


class _FakeSseTransport:
    def __init__(self) -> None:
        self.stopped = asyncio.Event()
        self.session_uuid = uuid.uuid4()
        self._read_stream_writers = {self.session_uuid: None}
        self.posts = 0

    @asynccontextmanager
    async def connect_sse(self, scope, receive, send):
        yield self.stopped, None

    async def handle_post_message(self, scope, receive, send) -> None:
        self.posts += 1
        await JSONResponse({"accepted": True}, status_code=202)(scope, receive, send)


async def _asgi(
    handler,
    method: str = "POST",
    path: str = "/mcp",
    headers: dict | None = None,
    query: str = "",
) -> tuple[int, dict]:
    """Drive a raw ASGI handler once; return (status, json body)."""
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode(),
        "query_string": query.encode(),
        "headers": [(k.encode(), v.encode()) for k, v in (headers or {}).items()],
    }
    messages: list[dict] = []

    async def receive() -> dict:
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message: dict) -> None:
        messages.append(message)

    await handler(scope, receive, send)
    status = next(m["status"] for m in messages if m["type"] == "http.response.start")
    body = b"".join(m.get("body", b"") for m in messages if m["type"] == "http.response.body")
    return status, json.loads(body) if body else {}


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _router() -> SessionRouter:
    return SessionRouter(
        _FakeServer(),  # type: ignore[arg-type]
        SessionManager(),
        streamable_transport_factory=_FakeStreamableTransport,
        sse_transport_factory=_FakeSseTransport,
    )


# ════════════════════════════════════════════════════════════════════════
#  SessionManager
# ════════════════════════════════════════════════════════════════════════


class TestSessionManager:
    def test_register_and_remove(self) -> None:
        sm = SessionManager()
        sm.register("abc", TransportKind.SSE, object())
        assert "abc" in sm
        assert sm.active_count == 1
        assert sm.remove_session("abc") is True
        assert sm.remove_session("abc") is False
        assert sm.active_count == 0

    def test_duplicate_id_rejected(self) -> None:
        sm = SessionManager()
        sm.register("abc", TransportKind.SSE, object())
        with pytest.raises(ValueError):
            sm.register("abc", TransportKind.STREAMABLE_HTTP, object())

    def test_counts_include_every_kind(self) -> None:
        sm = SessionManager()
        assert sm.counts() == {"streamable_http": 0, "sse": 0}
        sm.register("a", TransportKind.SSE, object())
        sm.register("b", TransportKind.STREAMABLE_HTTP, object())
        sm.register("c", TransportKind.STREAMABLE_HTTP, object())
        assert sm.counts() == {"streamable_http": 2, "sse": 1}
        assert [s.id for s in sm.sessions(TransportKind.SSE)] == ["a"]

    def test_get_session_touches(self) -> None:
        sm = SessionManager()
        session = sm.register("a", TransportKind.SSE, object())
        before = session.last_active
        assert sm.get_session("a") is session
        assert session.last_active >= before
        assert sm.get_session("missing") is None


# ════════════════════════════════════════════════════════════════════════
#  Streamable HTTP routing
# ════════════════════════════════════════════════════════════════════════


class TestStreamableHttp:
    @pytest.mark.asyncio
    async def test_unknown_session_is_404(self) -> None:
        router = _router()
        status, body = await _asgi(
            router.handle_streamable_http, headers={"mcp-session-id": "nope"}
        )
        assert status == 404
        assert body == {"error": "Session not found."}

    @pytest.mark.asyncio
    async def test_get_without_session_is_400(self) -> None:
        router = _router()
        status, _ = await _asgi(router.handle_streamable_http, method="GET")
        assert status == 400
        assert router.sessions.active_count == 0

    @pytest.mark.asyncio
    async def test_session_lifecycle(self) -> None:
        router = _router()

        status, body = await _asgi(router.handle_streamable_http, method="POST")
        assert status == 200
        session_id = body["session"]
        assert session_id in router.sessions
        assert router.sessions.counts()["streamable_http"] == 1

        status, body = await _asgi(
            router.handle_streamable_http, method="GET", headers={"mcp-session-id": session_id}
        )
        assert status == 200
        assert body["session"] == session_id
        transport = router.sessions.get_session(session_id).transport
        assert transport.requests == ["POST", "GET"]

        await router.close()
        assert session_id not in router.sessions
        assert router.sessions.active_count == 0

    @pytest.mark.asyncio
    async def test_closed_transport_leaves_table(self) -> None:
        router = _router()
        _, body = await _asgi(router.handle_streamable_http, method="POST")
        session_id = body["session"]
        transport = router.sessions.get_session(session_id).transport

        transport.stopped.set()
        await _wait_for(lambda: session_id not in router.sessions)

        status, _ = await _asgi(
            router.handle_streamable_http, headers={"mcp-session-id": session_id}
        )
        assert status == 404

    @pytest.mark.asyncio
    async def test_sse_session_id_not_valid_for_streamable(self) -> None:
        router = _router()
        router.sessions.register("sse-id", TransportKind.SSE, object())
        status, _ = await _asgi(
            router.handle_streamable_http, headers={"mcp-session-id": "sse-id"}
        )
        assert status == 404


# ════════════════════════════════════════════════════════════════════════
#  SSE routing
# ════════════════════════════════════════════════════════════════════════


class TestSse:
    def test_session_id_comes_from_sdk_writer_table(self) -> None:
        transport = _new_sse_transport()
        assert transport._read_stream_writers == {}
        with pytest.raises(RuntimeError, match="found 0"):
            _sse_session_id(transport)

        session_uuid = uuid.uuid4()
        transport._read_stream_writers[session_uuid] = None
        assert _sse_session_id(transport) == session_uuid.hex

    @pytest.mark.asyncio
    async def test_post_requires_session_id(self) -> None:
        router = _router()
        status, _ = await _asgi(router.handle_post_message, path="/messages/")
        assert status == 400

    @pytest.mark.asyncio
    async def test_post_unknown_session_is_404(self) -> None:
        router = _router()
        status, body = await _asgi(
            router.handle_post_message, path="/messages/", query="session_id=deadbeef"
        )
        assert status == 404
        assert body == {"error": "Session not found."}

    @pytest.mark.asyncio
    async def test_sse_lifecycle(self) -> None:
        router = _router()

        async def _noop_receive():
            return {"type": "http.disconnect"}

        async def _noop_send(message):
            return None

        scope = {"type": "http", "method": "GET", "path": "/sse", "headers": [], "query_string": b""}
        task = asyncio.create_task(router.handle_sse(scope, _noop_receive, _noop_send))
        await _wait_for(lambda: router.sessions.active_count == 1)

        session = router.sessions.sessions(TransportKind.SSE)[0]
        transport = session.transport
        assert session.id == transport.session_uuid.hex

        status, _ = await _asgi(
            router.handle_post_message, path="/messages/", query=f"session_id={session.id}"
        )
        assert status == 202
        assert transport.posts == 1

        transport.stopped.set()
        await asyncio.wait_for(task, timeout=1.0)
        assert router.sessions.active_count == 0


# ════════════════════════════════════════════════════════════════════════
#  Health and the Starlette app
# ════════════════════════════════════════════════════════════════════════


class _IdleEmbedder:
    async def load(self) -> None:
        return None

    async def embed(self, text: str) -> tuple[float, ...]:
        return (1.0, 0.0)


def _service(tmp_path) -> ProxyService:
    config = ProxyConfig(index=IndexSettings(snapshot_file=str(tmp_path / "index.json")))
    return ProxyService(config, "secret-token", embedder=_IdleEmbedder())


class TestApp:
    def test_health_when_disconnected(self, tmp_path) -> None:
        client = TestClient(create_app(_service(tmp_path)))
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "disconnected"
        assert data["upstreamState"] == "disconnected"
        assert data["operationCount"] == 0
        assert data["lastIndexedAt"] is None
        assert data["sessionCounts"] == {"streamable_http": 0, "sse": 0}

    def test_mcp_unknown_session(self, tmp_path) -> None:
        client = TestClient(create_app(_service(tmp_path)))
        response = client.post("/mcp", headers={"mcp-session-id": "missing"}, json={})
        assert response.status_code == 404
        assert response.json() == {"error": "Session not found."}

    def test_mcp_get_without_session(self, tmp_path) -> None:
        client = TestClient(create_app(_service(tmp_path)))
        response = client.get("/mcp")
        assert response.status_code == 400

    def test_messages_unknown_session(self, tmp_path) -> None:
        client = TestClient(create_app(_service(tmp_path)))
        response = client.post("/messages/?session_id=abc", json={})
        assert response.status_code == 404
