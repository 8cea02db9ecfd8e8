"""Connection supervisor for the upstream aggregator session."""

import asyncio
import logging
from typing import Any, AsyncContextManager, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from mcp import ClientSession, types

from mcp_vector_proxy.config.schema import UpstreamSettings
from mcp_vector_proxy.errors import NotReadyError, UpstreamError
from mcp_vector_proxy.upstream.models import (
    ConnectionState,
    UpstreamListener,
    UpstreamOperation,
    backoff_delay,
    is_valid_transition,
)
from mcp_vector_proxy.upstream.transport import MessageHandler, open_stdio_session

logger = logging.getLogger(__name__)

SessionFactory = Callable[
    [UpstreamSettings, str, MessageHandler, asyncio.Event],
    AsyncContextManager[ClientSession],
]
SleepFn = Callable[[float], Awaitable[None]]


class UpstreamClient:
    """Owns the one logical session to the aggregator.

    ``connect()`` retries forever with exponential backoff. When a live
    connection drops, exactly one reconnect loop is scheduled after
    ``reconnect_delay``; overlapping close events are absorbed by the state
    machine (a close seen while CONNECTING or RECONNECTING is a no-op).

    ``list_operations()`` and ``invoke()`` never retry; failures go to the
    caller.
    """

    def __init__(
        self,
        settings: UpstreamSettings,
        token: str,
        listener: Optional[UpstreamListener] = None,
        *,
        session_factory: SessionFactory = open_stdio_session,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._token = token
        self._listener = listener
        self._session_factory = session_factory
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._attempt = 0
        self._session: Optional[ClientSession] = None
        self._closed_event: Optional[asyncio.Event] = None
        self._hold_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._notify_tasks: Set[asyncio.Task] = set()
        self._closing = False

    # ── State ────────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempt(self) -> int:
        """Current (or last) connect attempt number, 0 before the first."""
        return self._attempt

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._session is not None

    def _transition(self, target: ConnectionState) -> None:
        if not is_valid_transition(self._state, target):
            raise ValueError(
                f"Invalid upstream state transition: {self._state.value} → {target.value}"
            )
        logger.debug("Upstream state: %s → %s", self._state.value, target.value)
        self._state = target

    # ── Connect / reconnect ──────────────────────────────────────────────

    async def connect(self) -> None:
        """Establish the upstream session, retrying until it succeeds.

        Returns once connected (after the listener's ``on_connected`` hook
        ran), or silently when the client is closed meanwhile.
        """
        self._attempt = 0
        while not self._closing:
            self._attempt += 1
            self._transition(ConnectionState.CONNECTING)
            logger.info("Connecting to upstream aggregator (attempt %d)...", self._attempt)
            try:
                session, closed = await self._open()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                delay = backoff_delay(
                    self._attempt, self._settings.backoff_base, self._settings.backoff_cap
                )
                logger.warning(
                    "Upstream connect attempt %d failed: %s: %s. Retrying in %.0fs.",
                    self._attempt,
                    type(exc).__name__,
                    exc,
                    delay,
                )
                await self._sleep(delay)
                continue

            if closed.is_set():
                # Dropped between the handshake and here; the hold task
                # deferred to this loop.
                logger.warning("Upstream closed during the handshake; retrying.")
                await self._sleep(
                    backoff_delay(
                        self._attempt, self._settings.backoff_base, self._settings.backoff_cap
                    )
                )
                continue

            self._session = session
            self._closed_event = closed
            self._transition(ConnectionState.CONNECTED)
            logger.info("Upstream aggregator connected.")
            await self._notify("on_connected")
            return

        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED)

    async def _open(self) -> Tuple[ClientSession, asyncio.Event]:
        """Start a hold task that owns the transport; wait for its handshake."""
        loop = asyncio.get_running_loop()
        opened: asyncio.Future = loop.create_future()
        closed = asyncio.Event()
        task = asyncio.create_task(self._hold_connection(opened, closed), name="upstream_session")
        try:
            session = await opened
        except BaseException:
            closed.set()
            await asyncio.gather(task, return_exceptions=True)
            raise
        self._hold_task = task
        return session, closed

    async def _hold_connection(self, opened: asyncio.Future, closed: asyncio.Event) -> None:
        """Enter the transport contexts and keep them open until *closed*.

        The async context managers must be entered and exited in the same
        task, so each connection gets its own task.
        """
        try:
            async with self._session_factory(
                self._settings, self._token, self._handle_message, closed
            ) as session:
                await asyncio.wait_for(session.initialize(), timeout=self._settings.init_timeout)
                opened.set_result(session)
                await closed.wait()
        except asyncio.CancelledError:
            closed.set()
            if not opened.done():
                opened.cancel()
            raise
        except Exception as exc:
            closed.set()
            if not opened.done():
                opened.set_exception(exc)
                return
            logger.warning("Upstream transport error: %s: %s", type(exc).__name__, exc)

        closed.set()
        if opened.done() and not opened.cancelled() and opened.exception() is None:
            await self._on_transport_closed(closed)

    async def _on_transport_closed(self, closed: asyncio.Event) -> None:
        """Handle a dropped connection: mark disconnected and schedule one reconnect."""
        if closed is not self._closed_event:
            return  # stale connection, or the connect loop still owns it
        if self._state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
            return
        if self._state is ConnectionState.DISCONNECTED:
            return

        self._session = None
        self._closed_event = None
        self._transition(ConnectionState.DISCONNECTED)
        await self._notify("on_disconnected")
        if self._closing:
            return

        logger.warning(
            "Upstream aggregator disconnected; reconnecting in %.0fs...",
            self._settings.reconnect_delay,
        )
        self._transition(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect(), name="upstream_reconnect")

    async def _reconnect(self) -> None:
        await self._sleep(self._settings.reconnect_delay)
        if self._closing:
            self._transition(ConnectionState.DISCONNECTED)
            return
        await self.connect()

    # ── Notifications ────────────────────────────────────────────────────

    async def _handle_message(self, message: Any) -> None:
        """Session message hook; reacts to tools/list_changed."""
        if isinstance(message, Exception):
            logger.debug("Upstream session reported: %s", message)
            return
        if isinstance(message, types.ServerNotification) and isinstance(
            message.root, types.ToolListChangedNotification
        ):
            logger.info("Upstream catalog changed notification received.")
            # Runs outside the session's receive loop so the listener may
            # issue requests on the same session.
            task = asyncio.create_task(self._notify("on_catalog_changed"))
            self._notify_tasks.add(task)
            task.add_done_callback(self._notify_tasks.discard)

    async def _notify(self, hook: str) -> None:
        if self._listener is None:
            return
        try:
            await getattr(self._listener, hook)()
        except Exception:
            logger.exception("Upstream listener hook '%s' failed.", hook)

    # ── Operations ───────────────────────────────────────────────────────

    def _require_session(self) -> ClientSession:
        if not self.is_connected or self._session is None:
            raise NotReadyError("Upstream aggregator is not connected. Please wait for reconnection.")
        return self._session

    async def list_operations(self) -> List[UpstreamOperation]:
        """Fetch the full upstream catalog (follows pagination)."""
        session = self._require_session()
        operations: List[UpstreamOperation] = []
        cursor: Optional[str] = None
        try:
            while True:
                result = await session.list_tools(cursor) if cursor else await session.list_tools()
                for tool in result.tools:
                    operations.append(
                        UpstreamOperation(
                            name=tool.name,
                            description=tool.description or "",
                            schema=dict(tool.inputSchema or {}),
                        )
                    )
                cursor = result.nextCursor
                if not cursor:
                    break
        except Exception as exc:
            raise UpstreamError("listing tools failed", exc) from exc
        logger.debug("Fetched %d upstream operations.", len(operations))
        return operations

    async def invoke(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> types.CallToolResult:
        """Forward one call upstream; result or error is passed through untouched."""
        session = self._require_session()
        closed = self._closed_event
        logger.debug("Invoking upstream operation '%s'.", name)
        if closed is None:
            return await session.call_tool(name, arguments or {})

        # A pending request gets no response once the transport is gone.
        call = asyncio.ensure_future(session.call_tool(name, arguments or {}))
        waiter = asyncio.ensure_future(closed.wait())
        try:
            await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not call.done():
                call.cancel()
            await asyncio.gather(call, waiter, return_exceptions=True)

        if call.cancelled():
            logger.warning("Upstream connection closed while '%s' was in flight.", name)
            raise UpstreamError(f"connection closed during call to '{name}'")
        return call.result()

    # ── Shutdown ─────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Stop reconnecting and terminate the upstream session."""
        self._closing = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            await asyncio.gather(self._reconnect_task, return_exceptions=True)
        for task in list(self._notify_tasks):
            task.cancel()
        if self._notify_tasks:
            await asyncio.gather(*self._notify_tasks, return_exceptions=True)

        if self._closed_event is not None:
            self._closed_event.set()
        if self._hold_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._hold_task), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Upstream session did not close in time; cancelling.")
                self._hold_task.cancel()
                await asyncio.gather(self._hold_task, return_exceptions=True)
            except Exception:
                logger.debug("Upstream hold task ended with an error.", exc_info=True)
            self._hold_task = None

        self._session = None
        self._closed_event = None
        if self._state is not ConnectionState.DISCONNECTED:
            self._state = ConnectionState.DISCONNECTED
        logger.info("Upstream client closed.")
