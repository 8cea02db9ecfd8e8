"""Session table shared by every downstream transport."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from mcp_vector_proxy.server.session.models import DownstreamSession, TransportKind

logger = logging.getLogger(__name__)


class SessionManager:
    """Maps session ids to live downstream sessions.

    Entries are added once the transport is connected and removed exactly
    once, from the transport's close path. There is no expiry: a session
    lives exactly as long as its transport.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, DownstreamSession] = {}

    # ── Session CRUD ─────────────────────────────────────────────────

    def register(
        self,
        session_id: str,
        transport_type: TransportKind,
        transport: Any,
    ) -> DownstreamSession:
        """Add a connected session. Session ids must be unique."""
        if session_id in self._sessions:
            raise ValueError(f"Session id already registered: {session_id}")
        session = DownstreamSession(id=session_id, transport_type=transport_type, transport=transport)
        self._sessions[session_id] = session
        logger.info(
            "Session created: id=%s transport=%s (open: %d)",
            session_id,
            transport_type.value,
            len(self._sessions),
        )
        return session

    def get_session(self, session_id: str) -> Optional[DownstreamSession]:
        """Return the live session, refreshing its idle timer, or ``None``."""
        session = self._sessions.get(session_id)
        if session is not None:
            session.touch()
        return session

    def remove_session(self, session_id: str) -> bool:
        """Drop a session from the table.

        Returns ``True`` if the session existed.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        logger.info(
            "Session closed: id=%s transport=%s (open: %d)",
            session_id,
            session.transport_type.value,
            len(self._sessions),
        )
        return True

    # ── Queries ──────────────────────────────────────────────────────

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def counts(self) -> Dict[str, int]:
        """Open sessions per transport kind (every kind present)."""
        result = {kind.value: 0 for kind in TransportKind}
        for session in self._sessions.values():
            result[session.transport_type.value] += 1
        return result

    def sessions(self, transport_type: Optional[TransportKind] = None) -> List[DownstreamSession]:
        return [
            s
            for s in self._sessions.values()
            if transport_type is None or s.transport_type is transport_type
        ]
