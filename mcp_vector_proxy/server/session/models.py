"""Session data models for downstream MCP connections."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from time import monotonic
from typing import Any


class TransportKind(str, Enum):
    """Wire protocols a downstream session can arrive on."""

    STREAMABLE_HTTP = "streamable_http"
    SSE = "sse"


@dataclass
class DownstreamSession:
    """One live agent connection and the transport that serves it.

    The transport handle is owned by the session; the router drops the
    session from its table in the same code path that closes the transport.
    """

    id: str
    transport_type: TransportKind
    transport: Any = field(repr=False, default=None)

    created_at: float = field(default_factory=monotonic)
    """Monotonic timestamp of session creation."""

    last_active: float = field(default_factory=monotonic)
    """Monotonic timestamp of last client activity."""

    def touch(self) -> None:
        """Update *last_active* to the current monotonic time."""
        self.last_active = monotonic()

