"""Session management for downstream MCP connections."""

from mcp_vector_proxy.server.session.manager import SessionManager
from mcp_vector_proxy.server.session.models import DownstreamSession, TransportKind

__all__ = ["DownstreamSession", "SessionManager", "TransportKind"]
