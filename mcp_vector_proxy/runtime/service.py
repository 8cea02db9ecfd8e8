"""Proxy runtime service: the one context object that owns every component.

``ProxyService`` wires the upstream client, catalog index, embedding
provider, search engine, downstream session table and health reporter
together, acts as the upstream client's listener, and runs the periodic
poll that backs up the catalog-changed notification. Nothing here is module
state, so tests can build a fresh service per case.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from mcp.server import Server as McpServer

from mcp_vector_proxy.catalog.index import CatalogIndex
from mcp_vector_proxy.catalog.store import SnapshotStore
from mcp_vector_proxy.config.schema import ProxyConfig
from mcp_vector_proxy.constants import SERVER_NAME, SERVER_VERSION
from mcp_vector_proxy.embedding.provider import EmbeddingProvider, SentenceTransformerProvider
from mcp_vector_proxy.runtime.models import ServiceState, ServiceStatus, is_valid_transition
from mcp_vector_proxy.search.engine import SearchEngine
from mcp_vector_proxy.server.handlers import build_mcp_server
from mcp_vector_proxy.server.health import HealthReporter
from mcp_vector_proxy.server.operations import ProxyOperations
from mcp_vector_proxy.server.session import SessionManager
from mcp_vector_proxy.server.transport import SessionRouter
from mcp_vector_proxy.upstream.client import SessionFactory, SleepFn, UpstreamClient
from mcp_vector_proxy.upstream.transport import open_stdio_session

logger = logging.getLogger(__name__)


class _InvalidStateTransition(Exception):
    """Raised internally when an illegal state transition is attempted."""

    def __init__(self, current: ServiceState, target: ServiceState) -> None:
        super().__init__(f"Invalid state transition: {current.value} → {target.value}")
        self.current = current
        self.target = target


class ProxyService:
    """Manages the full lifecycle of the proxy.

    State machine::

        PENDING ─► STARTING ─► RUNNING ─► STOPPING ─► STOPPED
                       │                      │
                       └──────► ERROR ◄───────┘

    Usage::

        service = ProxyService(config, token)
        await service.start()
        # ... serve downstream sessions ...
        await service.stop()

    ``start()`` returns as soon as the embedding model is loaded; the
    upstream connection is established in the background and retried
    forever.
    """

    def __init__(
        self,
        config: ProxyConfig,
        token: str,
        *,
        embedder: Optional[EmbeddingProvider] = None,
        session_factory: SessionFactory = open_stdio_session,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._config = config
        self._state = ServiceState.PENDING
        self._started_at: Optional[datetime] = None
        self._error_message: Optional[str] = None

        self._embedder: EmbeddingProvider = embedder or SentenceTransformerProvider(
            config.embedding
        )
        self._upstream = UpstreamClient(
            config.upstream,
            token,
            listener=self,
            session_factory=session_factory,
            sleep=sleep,
        )
        store = SnapshotStore(config.index.snapshot_file, model=config.embedding.model)
        self._index = CatalogIndex(self._upstream, self._embedder, store)
        self._engine = SearchEngine(hybrid=config.search.hybrid, rrf_k=config.search.rrf_k)
        self._sessions = SessionManager()
        self._operations = ProxyOperations(
            self._upstream,
            self._index,
            self._embedder,
            self._engine,
            discover_limit=config.index.discover_limit,
        )
        self._health = HealthReporter(self._upstream, self._index, self._sessions)
        self._mcp_server = build_mcp_server(self._operations)
        self._router = SessionRouter(self._mcp_server, self._sessions)

        self._connect_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._connected_once = False

        logger.info("ProxyService initialized (state=%s).", self._state.value)

    # ------------------------------------------------------------------ #
    #  Properties
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def config(self) -> ProxyConfig:
        return self._config

    @property
    def upstream(self) -> UpstreamClient:
        return self._upstream

    @property
    def index(self) -> CatalogIndex:
        return self._index

    @property
    def operations(self) -> ProxyOperations:
        return self._operations

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def health(self) -> HealthReporter:
        return self._health

    @property
    def mcp_server(self) -> McpServer:
        return self._mcp_server

    @property
    def router(self) -> SessionRouter:
        return self._router

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # ------------------------------------------------------------------ #
    #  State Machine
    # ------------------------------------------------------------------ #

    def _transition(self, target: ServiceState) -> None:
        """Transition to *target* state if the move is valid."""
        if not is_valid_transition(self._state, target):
            raise _InvalidStateTransition(self._state, target)
        prev = self._state
        self._state = target
        logger.info("Service state: %s → %s", prev.value, target.value)

    # ------------------------------------------------------------------ #
    #  Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Load the embedding model and launch the upstream connect loop.

        Raises whatever the embedding provider raises while loading; the
        service is then in ERROR.
        """
        self._transition(ServiceState.STARTING)
        try:
            await self._embedder.load()
        except Exception as exc:
            self._error_message = f"Startup error: {type(exc).__name__}: {exc}"
            logger.exception("Embedding model failed to load.")
            self._transition(ServiceState.ERROR)
            raise

        self._connect_task = asyncio.create_task(self._upstream.connect(), name="upstream_connect")
        self._started_at = datetime.now(timezone.utc)
        self._transition(ServiceState.RUNNING)

    async def stop(self) -> None:
        """Stop polling, close downstream sessions, terminate the upstream.

        Safe to call after a failed start.
        """
        if self._state in (ServiceState.RUNNING, ServiceState.ERROR):
            self._transition(ServiceState.STOPPING)
        elif self._state in (ServiceState.STOPPED, ServiceState.PENDING):
            logger.info(
                "Stop requested but service is already %s — nothing to do.",
                self._state.value,
            )
            return
        elif self._state == ServiceState.STOPPING:
            logger.warning("Stop already in progress — ignoring duplicate call.")
            return

        try:
            self._stop_polling()
            if self._connect_task is not None and not self._connect_task.done():
                self._connect_task.cancel()
                await asyncio.gather(self._connect_task, return_exceptions=True)
            await self._router.close()
            await self._upstream.close()
            self._transition(ServiceState.STOPPED)
        except Exception as exc:
            self._error_message = f"Shutdown error: {type(exc).__name__}: {exc}"
            logger.exception("Error during shutdown: %s", exc)
            self._transition(ServiceState.ERROR)

    # ------------------------------------------------------------------ #
    #  Upstream listener
    # ------------------------------------------------------------------ #

    async def on_connected(self) -> None:
        reason = "reconnect" if self._connected_once else "startup"
        self._connected_once = True
        try:
            await self._index.rebuild(reason)
        except Exception as exc:
            # The poll loop retries: an empty fingerprint never matches.
            logger.error("[%s] Index build failed: %s", reason, exc)
        self._start_polling()

    async def on_catalog_changed(self) -> None:
        try:
            await self._index.rebuild("notification")
        except Exception as exc:
            logger.error("[notification] Index build failed: %s", exc)

    async def on_disconnected(self) -> None:
        self._index.mark_degraded(True)
        self._stop_polling()

    # ------------------------------------------------------------------ #
    #  Polling fallback
    # ------------------------------------------------------------------ #

    def _start_polling(self) -> None:
        self._stop_polling()
        self._poll_task = asyncio.create_task(self._poll_loop(), name="catalog_poll")
        logger.info("Polling every %.1fs.", self._config.index.poll_interval)

    def _stop_polling(self) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = None

    async def _poll_loop(self) -> None:
        interval = self._config.index.poll_interval
        while True:
            await asyncio.sleep(interval)
            if not self._upstream.is_connected:
                continue
            try:
                fingerprint = await self._index.upstream_fingerprint()
                if fingerprint != self._index.current_snapshot().fingerprint:
                    logger.info("Poll: changes detected, re-indexing...")
                    await self._index.rebuild("poll")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Poll error: %s", exc)

    # ------------------------------------------------------------------ #
    #  Status
    # ------------------------------------------------------------------ #

    def get_status(self) -> ServiceStatus:
        snapshot = self._index.current_snapshot()
        status = ServiceStatus(
            state=self._state,
            server_name=SERVER_NAME,
            server_version=SERVER_VERSION,
            started_at=self._started_at,
            upstream_state=self._upstream.state.value,
            upstream_attempt=self._upstream.attempt,
            operation_count=len(snapshot),
            last_indexed_at=snapshot.built_at,
            degraded=self._index.degraded,
            sessions=self._sessions.counts(),
            error_message=self._error_message,
        )
        status.compute_uptime()
        return status
