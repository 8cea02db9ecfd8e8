"""Upstream subpackage - the supervised session to the MCP aggregator."""

from mcp_vector_proxy.upstream.client import UpstreamClient
from mcp_vector_proxy.upstream.models import (
    ConnectionState,
    UpstreamListener,
    UpstreamOperation,
    backoff_delay,
)

__all__ = [
    "ConnectionState",
    "UpstreamClient",
    "UpstreamListener",
    "UpstreamOperation",
    "backoff_delay",
]
