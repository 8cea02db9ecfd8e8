"""Health summary for external pollers (process supervisor, tray, ``status``)."""

import logging
from typing import Dict, Literal, Optional, Protocol

from pydantic import BaseModel, Field
from starlette.requests import Request
from starlette.responses import JSONResponse

from mcp_vector_proxy.catalog.index import CatalogIndex
from mcp_vector_proxy.constants import SERVER_VERSION
from mcp_vector_proxy.server.session import SessionManager
from mcp_vector_proxy.upstream.models import ConnectionState

logger = logging.getLogger(__name__)


class _UpstreamView(Protocol):
    @property
    def is_connected(self) -> bool: ...

    @property
    def state(self) -> ConnectionState: ...


class HealthResponse(BaseModel):
    status: Literal["ok", "disconnected"]
    upstreamState: str = Field(description="disconnected | connecting | connected | reconnecting")
    degraded: bool = Field(
        default=False, description="True while a stale catalog is held for a lost upstream"
    )
    operationCount: int = 0
    lastIndexedAt: Optional[str] = None  # ISO-8601
    sessionCounts: Dict[str, int] = Field(default_factory=dict)
    version: str = SERVER_VERSION


class HealthReporter:
    """Pure projection of upstream, catalog and session state."""

    def __init__(
        self,
        upstream: _UpstreamView,
        index: CatalogIndex,
        sessions: SessionManager,
    ) -> None:
        self._upstream = upstream
        self._index = index
        self._sessions = sessions

    def report(self) -> HealthResponse:
        snapshot = self._index.current_snapshot()
        return HealthResponse(
            status="ok" if self._upstream.is_connected else "disconnected",
            upstreamState=self._upstream.state.value,
            degraded=self._index.degraded,
            operationCount=len(snapshot),
            lastIndexedAt=snapshot.built_at.isoformat() if snapshot.built_at else None,
            sessionCounts=self._sessions.counts(),
        )


# ── GET /health ──────────────────────────────────────────────────────────


async def handle_health(request: Request) -> JSONResponse:
    """Always 200 while the process is alive; ``status`` carries the verdict."""
    reporter: Optional[HealthReporter] = getattr(request.app.state, "health_reporter", None)
    if reporter is None:
        logger.error("Health reporter not found on app.state.")
        return JSONResponse({"error": "Service not ready"}, status_code=503)
    return JSONResponse(reporter.report().model_dump())
