"""Tests for the proxy runtime service (lifecycle, listener hooks, polling)."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest
from mcp import types

from mcp_vector_proxy.config.schema import IndexSettings, ProxyConfig
from mcp_vector_proxy.runtime import ProxyService, ServiceState
from mcp_vector_proxy.runtime.models import is_valid_transition
from mcp_vector_proxy.upstream.models import ConnectionState


# ── Helpers ──────────────────────────────────────────────────────────────


class _FakeSession:
    def __init__(self) -> None:
        self.tools = [types.Tool(name="read_file", description="Read a file", inputSchema={})]

    async def initialize(self) -> None:
        return None

    async def list_tools(self, cursor: str | None = None) -> types.ListToolsResult:
        return types.ListToolsResult(tools=list(self.tools))

    async def call_tool(self, name: str, arguments: dict) -> types.CallToolResult:
        return types.CallToolResult(content=[types.TextContent(type="text", text=name)])


class _FakeFactory:
    def __init__(self) -> None:
        self.session = _FakeSession()
        self.closed_events: list[asyncio.Event] = []

    @asynccontextmanager
    async def __call__(self, settings, token, message_handler, closed):
        self.closed_events.append(closed)
        try:
            yield self.session
        finally:
            closed.set()


class _FakeEmbedder:
    def __init__(self, fail_load: bool = False) -> None:
        self.fail_load = fail_load
        self.loaded = False
        self.embedded = 0

    async def load(self) -> None:
        if self.fail_load:
            raise RuntimeError("model download failed")
        self.loaded = True

    async def embed(self, text: str) -> tuple[float, ...]:
        self.embedded += 1
        return (float(len(text)), 1.0)


async def _instant_sleep(delay: float) -> None:
    await asyncio.sleep(0)


async def _wait_for(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _ready(service: ProxyService) -> bool:
    return service.index.has_built and service.is_polling


def _service(tmp_path, *, poll_interval: float = 60.0, embedder=None, factory=None) -> ProxyService:
    config = ProxyConfig(
        index=IndexSettings(
            snapshot_file=str(tmp_path / ".tool-index.json"),
            poll_interval=poll_interval,
        )
    )
    return ProxyService(
        config,
        "secret-token",
        embedder=embedder or _FakeEmbedder(),
        session_factory=factory or _FakeFactory(),
        sleep=_instant_sleep,
    )


class TestServiceState:
    def test_transitions(self) -> None:
        assert is_valid_transition(ServiceState.PENDING, ServiceState.STARTING)
        assert is_valid_transition(ServiceState.STARTING, ServiceState.ERROR)
        assert is_valid_transition(ServiceState.ERROR, ServiceState.STOPPING)
        assert not is_valid_transition(ServiceState.STOPPED, ServiceState.STARTING)
        assert not is_valid_transition(ServiceState.PENDING, ServiceState.RUNNING)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_connects_and_indexes(self, tmp_path) -> None:
        service = _service(tmp_path)
        await service.start()
        assert service.state is ServiceState.RUNNING

        await _wait_for(lambda: _ready(service))
        report = service.health.report()
        assert report.status == "ok"
        assert report.operationCount == 1
        assert report.lastIndexedAt is not None
        assert service.is_polling
        assert service.index.last_result.reason == "startup"
        assert (tmp_path / ".tool-index.json").exists()

        await service.stop()
        assert service.state is ServiceState.STOPPED
        assert service.upstream.state is ConnectionState.DISCONNECTED
        assert not service.is_polling

    @pytest.mark.asyncio
    async def test_embedding_load_failure(self, tmp_path) -> None:
        service = _service(tmp_path, embedder=_FakeEmbedder(fail_load=True))
        with pytest.raises(RuntimeError, match="model download failed"):
            await service.start()
        assert service.state is ServiceState.ERROR
        assert "model download failed" in service.get_status().error_message

        await service.stop()
        assert service.state is ServiceState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_before_start_is_noop(self, tmp_path) -> None:
        service = _service(tmp_path)
        await service.stop()
        assert service.state is ServiceState.PENDING

    @pytest.mark.asyncio
    async def test_status(self, tmp_path) -> None:
        service = _service(tmp_path)
        await service.start()
        await _wait_for(lambda: _ready(service))

        status = service.get_status()
        assert status.state is ServiceState.RUNNING
        assert status.upstream_state == "connected"
        assert status.operation_count == 1
        assert status.uptime_seconds is not None
        assert status.sessions == {"streamable_http": 0, "sse": 0}
        await service.stop()


class TestUpstreamEvents:
    @pytest.mark.asyncio
    async def test_drop_marks_degraded_then_recovers(self, tmp_path) -> None:
        factory = _FakeFactory()
        embedder = _FakeEmbedder()
        service = _service(tmp_path, factory=factory, embedder=embedder)
        await service.start()
        await _wait_for(lambda: _ready(service))

        factory.closed_events[0].set()
        await _wait_for(lambda: len(factory.closed_events) == 2 and service.upstream.is_connected)
        await _wait_for(lambda: service.index.last_result.reason == "reconnect")

        # Same catalog after reconnect: nothing re-embedded, stale flag cleared.
        assert service.index.last_result.skip_reason == "unchanged"
        assert embedder.embedded == 1
        assert service.index.degraded is False
        assert service.is_polling
        await service.stop()

    @pytest.mark.asyncio
    async def test_disconnect_serves_stale_catalog(self, tmp_path) -> None:
        factory = _FakeFactory()
        service = _service(tmp_path, factory=factory)
        await service.start()
        await _wait_for(lambda: _ready(service))

        await service.on_disconnected()

        assert service.index.degraded is True
        assert not service.is_polling
        assert len(service.index.current_snapshot()) == 1
        await service.stop()

    @pytest.mark.asyncio
    async def test_catalog_changed_rebuilds(self, tmp_path) -> None:
        factory = _FakeFactory()
        service = _service(tmp_path, factory=factory)
        await service.start()
        await _wait_for(lambda: _ready(service))

        factory.session.tools.append(
            types.Tool(name="send_email", description="Send an email", inputSchema={})
        )
        await service.on_catalog_changed()

        assert service.index.last_result.reason == "notification"
        assert len(service.index.current_snapshot()) == 2
        await service.stop()

    @pytest.mark.asyncio
    async def test_poll_picks_up_changes(self, tmp_path) -> None:
        factory = _FakeFactory()
        service = _service(tmp_path, factory=factory, poll_interval=0.05)
        await service.start()
        await _wait_for(lambda: _ready(service))

        factory.session.tools.append(
            types.Tool(name="create_issue", description="Create an issue", inputSchema={})
        )
        # last_result lands after persistence, later than the snapshot swap.
        await _wait_for(lambda: service.index.last_result.reason == "poll")

        assert len(service.index.current_snapshot()) == 2
        assert service.index.last_result.added == 1
        await service.stop()
