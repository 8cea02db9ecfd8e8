"""Stdio transport to the upstream aggregator child process.

The aggregator is spawned as a child process speaking MCP over its
stdin/stdout. Two details matter here:

* The child's stderr is logged line by line instead of inheriting our own
  stderr (which, in stdio mode, sits next to the protocol channel).
* The end of the child's stdout is the "connection closed" signal. The
  transport's read stream is pumped through a zero-buffer ``anyio`` memory
  stream so that the EOF can be observed and reported through *closed*.
"""

import asyncio
import logging
import os
import threading
from contextlib import asynccontextmanager
from typing import IO, Any, AsyncIterator, Awaitable, Callable, Dict

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from mcp_vector_proxy.config.schema import UpstreamSettings

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], Awaitable[None]]


def build_server_parameters(settings: UpstreamSettings, token: str) -> StdioServerParameters:
    """Launch parameters for the aggregator; the token travels in the child env."""
    env: Dict[str, str] = dict(os.environ)
    env.update(settings.env)
    env[settings.token_env] = token
    return StdioServerParameters(command=settings.command, args=list(settings.args), env=env)


def _drain_stderr(reader: IO[str]) -> None:
    """Log each stderr line of the child until EOF."""
    with reader:
        for line in reader:
            line = line.rstrip()
            if line:
                logger.info("[upstream-stderr] %s", line)
    logger.debug("[upstream-stderr] Stream ended (EOF).")


async def _pump(source: Any, sink: Any, closed: asyncio.Event) -> None:
    """Forward transport messages to the session; flag EOF through *closed*."""
    try:
        async with sink:
            async for item in source:
                await sink.send(item)
    except (anyio.BrokenResourceError, anyio.ClosedResourceError):
        pass
    finally:
        closed.set()


@asynccontextmanager
async def open_stdio_session(
    settings: UpstreamSettings,
    token: str,
    message_handler: MessageHandler,
    closed: asyncio.Event,
) -> AsyncIterator[ClientSession]:
    """Spawn the aggregator and yield an un-initialized :class:`ClientSession`.

    *closed* is set once the child's output stream ends, whatever the cause.
    Leaving the context terminates the child process.
    """
    params = build_server_parameters(settings, token)
    logger.info(
        "Starting upstream aggregator: '%s' args: %s",
        params.command,
        params.args,
    )

    read_fd, write_fd = os.pipe()
    errlog = os.fdopen(write_fd, "w", encoding="utf-8")
    reader = os.fdopen(read_fd, "r", encoding="utf-8", errors="replace")
    # Blocking reads; a daemon thread never holds up interpreter shutdown.
    threading.Thread(
        target=_drain_stderr, args=(reader,), name="upstream-stderr", daemon=True
    ).start()

    try:
        async with stdio_client(params, errlog=errlog) as (read_stream, write_stream):
            send, recv = anyio.create_memory_object_stream(0)
            async with anyio.create_task_group() as tg:
                tg.start_soon(_pump, read_stream, send, closed)
                async with ClientSession(recv, write_stream, message_handler=message_handler) as session:
                    yield session
                tg.cancel_scope.cancel()
    finally:
        closed.set()
        errlog.close()
        logger.debug("Upstream transport closed.")
