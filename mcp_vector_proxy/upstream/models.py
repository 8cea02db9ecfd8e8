"""Value types for the upstream aggregator connection."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Protocol


class ConnectionState(str, Enum):
    """Supervisor states for the single upstream session.

    Valid transitions::

        DISCONNECTED → CONNECTING → CONNECTED → DISCONNECTED → RECONNECTING
                          ↺ (next attempt)                        ↓
                                                              CONNECTING
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


_VALID_TRANSITIONS: Dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.RECONNECTING}
    ),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.DISCONNECTED}),
    ConnectionState.RECONNECTING: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED}
    ),
}


def is_valid_transition(current: ConnectionState, target: ConnectionState) -> bool:
    """Check whether a connection state transition is allowed."""
    return target in _VALID_TRANSITIONS.get(current, frozenset())


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retrying after failed connect *attempt* (1-based).

    ``base`` doubles per attempt and never exceeds ``cap``:
    2, 4, 8, 16, 30, 30, ... with the defaults.
    """
    if attempt < 1:
        attempt = 1
    return min(base * (2 ** (attempt - 1)), cap)


@dataclass(frozen=True)
class UpstreamOperation:
    """One callable operation as advertised by the aggregator."""

    name: str
    description: str = ""
    schema: Dict[str, Any] = field(default_factory=dict)


class UpstreamListener(Protocol):
    """Observer notified by :class:`UpstreamClient` of connection events.

    Exactly one listener is registered per client instance.
    """

    async def on_connected(self) -> None: ...

    async def on_catalog_changed(self) -> None: ...

    async def on_disconnected(self) -> None: ...
