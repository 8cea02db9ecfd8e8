"""Streamable HTTP and SSE transport handling for downstream MCP sessions.

:class:`SessionRouter` owns the per-session transports. Requests without a
session id start a new session; requests with a known id are routed to that
session's transport; unknown ids get a 404. Every session is dropped from
the :class:`SessionManager` in the ``finally`` block that closes its
transport, so the table never outlives the transport it points to.
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Set

from mcp.server import Server as McpServer
from mcp.server.sse import SseServerTransport
from mcp.server.streamable_http import StreamableHTTPServerTransport
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import Receive, Scope, Send

from mcp_vector_proxy.constants import MCP_SESSION_ID_HEADER, POST_MESSAGES_PATH
from mcp_vector_proxy.server.session import SessionManager, TransportKind

logger = logging.getLogger(__name__)

SESSION_NOT_FOUND = {"error": "Session not found."}


def _new_streamable_transport(session_id: str) -> StreamableHTTPServerTransport:
    return StreamableHTTPServerTransport(
        mcp_session_id=session_id,
        is_json_response_enabled=False,
        event_store=None,
    )


def _new_sse_transport() -> SseServerTransport:
    return SseServerTransport(POST_MESSAGES_PATH)


def _sse_session_id(transport: SseServerTransport) -> str:
    """Session id the SSE transport announced to its client.

    Each connection gets its own transport instance, so its writer table
    holds exactly one entry: this connection. The client echoes the id
    back as ``session_id=<uuid hex>``.
    """
    # mcp 1.x keys ``_read_stream_writers`` by the UUID it puts in the
    # endpoint event, and fills it before ``connect_sse`` yields. The
    # endpoint event itself may still be unsent at that point.
    writers = transport._read_stream_writers
    if len(writers) != 1:
        raise RuntimeError(f"Expected one SSE stream per transport, found {len(writers)}.")
    return next(iter(writers)).hex


class SessionRouter:
    """Serves downstream MCP sessions over streamable HTTP and SSE.

    Parameters
    ----------
    mcp_server:
        Server whose ``run`` loop handles each session.
    sessions:
        Shared session table (also read by the health reporter).
    streamable_transport_factory / sse_transport_factory:
        Transport constructors; replaceable for tests.
    """

    def __init__(
        self,
        mcp_server: McpServer,
        sessions: SessionManager,
        *,
        streamable_transport_factory: Callable[[str], Any] = _new_streamable_transport,
        sse_transport_factory: Callable[[], Any] = _new_sse_transport,
    ) -> None:
        self._server = mcp_server
        self._sessions = sessions
        self._streamable_factory = streamable_transport_factory
        self._sse_factory = sse_transport_factory
        self._tasks: Set[asyncio.Task] = set()

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    # ── Streamable HTTP ──────────────────────────────────────────────

    async def handle_streamable_http(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Handle POST/GET/DELETE on the streamable HTTP endpoint."""
        request = Request(scope, receive)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        logger.debug(
            "Streamable HTTP request (%s), session=%s", request.method, session_id or "<new>"
        )

        if session_id:
            session = self._sessions.get_session(session_id)
            if session is None or session.transport_type is not TransportKind.STREAMABLE_HTTP:
                response = JSONResponse(SESSION_NOT_FOUND, status_code=404)
                await response(scope, receive, send)
                return
            await session.transport.handle_request(scope, receive, send)
            return

        if request.method != "POST":
            response = JSONResponse(
                {"error": "POST to /mcp to start a session."}, status_code=400
            )
            await response(scope, receive, send)
            return

        await self._start_streamable_session(scope, receive, send)

    async def _start_streamable_session(self, scope: Scope, receive: Receive, send: Send) -> None:
        session_id = uuid.uuid4().hex
        transport = self._streamable_factory(session_id)
        ready = asyncio.Event()
        task = asyncio.create_task(
            self._run_streamable_session(session_id, transport, ready),
            name=f"mcp_session_{session_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        await ready.wait()
        if session_id not in self._sessions:
            response = JSONResponse({"error": "Could not start session."}, status_code=500)
            await response(scope, receive, send)
            return
        await transport.handle_request(scope, receive, send)

    async def _run_streamable_session(
        self, session_id: str, transport: Any, ready: asyncio.Event
    ) -> None:
        """Own one streamable HTTP session from connect to close."""
        registered = False
        try:
            async with transport.connect() as (read_stream, write_stream):
                self._sessions.register(session_id, TransportKind.STREAMABLE_HTTP, transport)
                registered = True
                ready.set()
                await self._server.run(
                    read_stream,
                    write_stream,
                    self._server.create_initialization_options(),
                )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Streamable HTTP session %s crashed.", session_id)
        finally:
            ready.set()
            if registered:
                self._sessions.remove_session(session_id)

    # ── SSE ──────────────────────────────────────────────────────────

    async def handle_sse(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Handle a GET on the SSE endpoint: one long-lived session."""
        logger.debug("Received new SSE connection request.")
        transport = self._sse_factory()
        async with transport.connect_sse(scope, receive, send) as (read_stream, write_stream):
            session_id = _sse_session_id(transport)
            self._sessions.register(session_id, TransportKind.SSE, transport)
            try:
                await self._server.run(
                    read_stream,
                    write_stream,
                    self._server.create_initialization_options(),
                )
            finally:
                self._sessions.remove_session(session_id)
        logger.debug("SSE connection closed.")

    async def handle_post_message(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Route a client → server message to its SSE session."""
        request = Request(scope, receive)
        session_id = request.query_params.get("session_id")
        if not session_id:
            response = JSONResponse({"error": "session_id is required."}, status_code=400)
            await response(scope, receive, send)
            return
        session = self._sessions.get_session(session_id)
        if session is None or session.transport_type is not TransportKind.SSE:
            response = JSONResponse(SESSION_NOT_FOUND, status_code=404)
            await response(scope, receive, send)
            return
        await session.transport.handle_post_message(scope, receive, send)

    # ── Shutdown ─────────────────────────────────────────────────────

    async def close(self) -> None:
        """Terminate every streamable HTTP session and wait for its task."""
        for session in self._sessions.sessions(TransportKind.STREAMABLE_HTTP):
            try:
                await session.transport.terminate()
            except Exception:
                logger.debug("Error terminating session %s.", session.id, exc_info=True)
        if self._tasks:
            _done, pending = await asyncio.wait(set(self._tasks), timeout=5.0)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Session router closed.")


class ASGIEndpoint:
    """Expose a ``(scope, receive, send)`` coroutine as a raw ASGI app.

    Starlette wraps plain functions and bound methods as request/response
    endpoints; an object instance is mounted as-is.
    """

    def __init__(self, handler: Callable[[Scope, Receive, Send], Any]) -> None:
        self._handler = handler

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self._handler(scope, receive, send)
