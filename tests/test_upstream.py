"""Tests for the upstream connection supervisor."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest
from mcp import types

from mcp_vector_proxy.config.schema import UpstreamSettings
from mcp_vector_proxy.errors import NotReadyError, UpstreamError
from mcp_vector_proxy.upstream.client import UpstreamClient
from mcp_vector_proxy.upstream.models import ConnectionState, backoff_delay, is_valid_transition
from mcp_vector_proxy.upstream.transport import build_server_parameters


# ── Helpers ──────────────────────────────────────────────────────────────


class _FakeSession:
    """Minimal stand-in for ``mcp.ClientSession``."""

    def __init__(self, pages: list[list[types.Tool]] | None = None) -> None:
        self.pages = pages or [[types.Tool(name="read_file", description="Read", inputSchema={})]]
        self.calls: list[tuple[str, dict]] = []
        self.call_error: Exception | None = None
        self.list_error: Exception | None = None
        self.call_gate: asyncio.Event | None = None

    async def initialize(self) -> None:
        return None

    async def list_tools(self, cursor: str | None = None) -> types.ListToolsResult:
        if self.list_error is not None:
            raise self.list_error
        idx = int(cursor) if cursor else 0
        next_cursor = str(idx + 1) if idx + 1 < len(self.pages) else None
        return types.ListToolsResult(tools=self.pages[idx], nextCursor=next_cursor)

    async def call_tool(self, name: str, arguments: dict) -> types.CallToolResult:
        self.calls.append((name, arguments))
        if self.call_gate is not None:
            await self.call_gate.wait()
        if self.call_error is not None:
            raise self.call_error
        return types.CallToolResult(content=[types.TextContent(type="text", text=f"ran {name}")])


class _FakeFactory:
    """Session factory that fails a configurable number of times first."""

    def __init__(self, fail_times: int = 0, session: _FakeSession | None = None) -> None:
        self.fail_times = fail_times
        self.session = session or _FakeSession()
        self.attempts = 0
        self.closed_events: list[asyncio.Event] = []
        self.message_handler = None

    @asynccontextmanager
    async def __call__(self, settings, token, message_handler, closed):
        self.attempts += 1
        if self.attempts <= self.fail_times:
            raise ConnectionError(f"spawn failed #{self.attempts}")
        self.message_handler = message_handler
        self.closed_events.append(closed)
        try:
            yield self.session
        finally:
            closed.set()


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class _Listener:
    def __init__(self) -> None:
        self.connected = 0
        self.changed = 0
        self.disconnected = 0

    async def on_connected(self) -> None:
        self.connected += 1

    async def on_catalog_changed(self) -> None:
        self.changed += 1

    async def on_disconnected(self) -> None:
        self.disconnected += 1


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _client(factory: _FakeFactory, sleep=None, listener=None) -> UpstreamClient:
    return UpstreamClient(
        UpstreamSettings(),
        "secret-token",
        listener,
        session_factory=factory,
        sleep=sleep or _RecordingSleep(),
    )


# ════════════════════════════════════════════════════════════════════════
#  State machine and backoff
# ════════════════════════════════════════════════════════════════════════


class TestStateMachine:
    def test_backoff_sequence(self) -> None:
        assert [backoff_delay(n, 2.0, 30.0) for n in range(1, 8)] == [2, 4, 8, 16, 30, 30, 30]

    def test_backoff_attempt_floor(self) -> None:
        assert backoff_delay(0, 2.0, 30.0) == 2.0

    def test_transitions(self) -> None:
        assert is_valid_transition(ConnectionState.DISCONNECTED, ConnectionState.CONNECTING)
        assert is_valid_transition(ConnectionState.CONNECTING, ConnectionState.CONNECTING)
        assert is_valid_transition(ConnectionState.CONNECTED, ConnectionState.DISCONNECTED)
        assert is_valid_transition(ConnectionState.DISCONNECTED, ConnectionState.RECONNECTING)
        assert not is_valid_transition(ConnectionState.CONNECTED, ConnectionState.CONNECTING)
        assert not is_valid_transition(ConnectionState.RECONNECTING, ConnectionState.CONNECTED)


class TestServerParameters:
    def test_token_travels_in_child_env(self) -> None:
        settings = UpstreamSettings(command="agg", args=["connect"], env={"EXTRA": "1"})
        params = build_server_parameters(settings, "tok-123")
        assert params.command == "agg"
        assert params.args == ["connect"]
        assert params.env is not None
        assert params.env["MCPR_TOKEN"] == "tok-123"
        assert params.env["EXTRA"] == "1"


# ════════════════════════════════════════════════════════════════════════
#  Connect / reconnect
# ════════════════════════════════════════════════════════════════════════


class TestConnect:
    @pytest.mark.asyncio
    async def test_connects_and_notifies(self) -> None:
        listener = _Listener()
        client = _client(_FakeFactory(), listener=listener)

        await client.connect()

        assert client.state is ConnectionState.CONNECTED
        assert client.is_connected
        assert listener.connected == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_retries_with_capped_backoff(self) -> None:
        sleep = _RecordingSleep()
        factory = _FakeFactory(fail_times=6)
        client = _client(factory, sleep=sleep)

        await client.connect()

        assert sleep.delays == [2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
        assert factory.attempts == 7
        assert client.attempt == 7
        assert client.is_connected
        await client.close()

    @pytest.mark.asyncio
    async def test_drop_schedules_exactly_one_reconnect(self) -> None:
        sleep = _RecordingSleep()
        listener = _Listener()
        factory = _FakeFactory()
        client = _client(factory, sleep=sleep, listener=listener)
        await client.connect()
        first_closed = factory.closed_events[0]

        first_closed.set()
        # A second close signal for the same connection changes nothing.
        first_closed.set()
        await _wait_for(lambda: listener.connected == 2)

        assert listener.disconnected == 1
        assert factory.attempts == 2
        assert sleep.delays == [5.0]
        assert client.state is ConnectionState.CONNECTED
        await client.close()

    @pytest.mark.asyncio
    async def test_close_during_connected_stops_for_good(self) -> None:
        sleep = _RecordingSleep()
        listener = _Listener()
        factory = _FakeFactory()
        client = _client(factory, sleep=sleep, listener=listener)
        await client.connect()

        await client.close()
        await asyncio.sleep(0.05)

        assert client.state is ConnectionState.DISCONNECTED
        assert not client.is_connected
        assert factory.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_close_stops_retry_loop(self) -> None:
        gate = asyncio.Event()

        async def _blocking_sleep(delay: float) -> None:
            await gate.wait()

        client = _client(_FakeFactory(fail_times=100), sleep=_blocking_sleep)
        task = asyncio.create_task(client.connect())
        await _wait_for(lambda: client.attempt == 1)

        await client.close()
        gate.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert client.state is ConnectionState.DISCONNECTED


# ════════════════════════════════════════════════════════════════════════
#  Operations
# ════════════════════════════════════════════════════════════════════════


class TestOperations:
    @pytest.mark.asyncio
    async def test_list_operations_follows_pagination(self) -> None:
        session = _FakeSession(
            pages=[
                [types.Tool(name="a", description="A", inputSchema={"type": "object"})],
                [types.Tool(name="b", inputSchema={})],
            ]
        )
        client = _client(_FakeFactory(session=session))
        await client.connect()

        ops = await client.list_operations()

        assert [o.name for o in ops] == ["a", "b"]
        assert ops[0].schema == {"type": "object"}
        assert ops[1].description == ""
        await client.close()

    @pytest.mark.asyncio
    async def test_list_failure_is_wrapped(self) -> None:
        session = _FakeSession()
        session.list_error = RuntimeError("pipe broke")
        client = _client(_FakeFactory(session=session))
        await client.connect()

        with pytest.raises(UpstreamError) as exc_info:
            await client.list_operations()
        assert isinstance(exc_info.value.orig_exc, RuntimeError)
        await client.close()

    @pytest.mark.asyncio
    async def test_not_connected_raises_not_ready(self) -> None:
        client = _client(_FakeFactory())
        with pytest.raises(NotReadyError):
            await client.list_operations()
        with pytest.raises(NotReadyError):
            await client.invoke("a", {})

    @pytest.mark.asyncio
    async def test_invoke_passes_result_through(self) -> None:
        session = _FakeSession()
        client = _client(_FakeFactory(session=session))
        await client.connect()

        result = await client.invoke("read_file", {"path": "/tmp/x"})

        assert session.calls == [("read_file", {"path": "/tmp/x"})]
        assert result.content[0].text == "ran read_file"
        await client.close()

    @pytest.mark.asyncio
    async def test_invoke_is_never_retried(self) -> None:
        session = _FakeSession()
        session.call_error = RuntimeError("upstream timeout")
        client = _client(_FakeFactory(session=session))
        await client.connect()

        with pytest.raises(RuntimeError, match="upstream timeout"):
            await client.invoke("send_email", {"to": "a@b.c"})

        assert len(session.calls) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_drop_fails_pending_invoke(self) -> None:
        session = _FakeSession()
        session.call_gate = asyncio.Event()
        listener = _Listener()
        factory = _FakeFactory(session=session)
        client = _client(factory, listener=listener)
        await client.connect()

        pending = asyncio.create_task(client.invoke("die", {}))
        await _wait_for(lambda: session.calls == [("die", {})])
        factory.closed_events[0].set()

        with pytest.raises(UpstreamError, match="connection closed"):
            await asyncio.wait_for(pending, timeout=1.0)
        await _wait_for(lambda: listener.connected == 2)
        assert listener.disconnected == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_close_fails_pending_invoke(self) -> None:
        session = _FakeSession()
        session.call_gate = asyncio.Event()
        client = _client(_FakeFactory(session=session))
        await client.connect()

        pending = asyncio.create_task(client.invoke("slow", {}))
        await _wait_for(lambda: len(session.calls) == 1)
        await client.close()

        with pytest.raises(UpstreamError):
            await asyncio.wait_for(pending, timeout=1.0)

    @pytest.mark.asyncio
    async def test_tool_list_changed_notifies_listener(self) -> None:
        listener = _Listener()
        factory = _FakeFactory()
        client = _client(factory, listener=listener)
        await client.connect()

        notification = types.ServerNotification(
            types.ToolListChangedNotification(method="notifications/tools/list_changed")
        )
        await factory.message_handler(notification)
        await _wait_for(lambda: listener.changed == 1)

        await factory.message_handler(RuntimeError("transport hiccup"))
        assert listener.changed == 1
        await client.close()
