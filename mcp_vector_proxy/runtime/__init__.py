"""Runtime service layer for MCP Vector Proxy.

Re-exports the key symbols so callers can write::

    from mcp_vector_proxy.runtime import ProxyService, ServiceState, ServiceStatus
"""

from mcp_vector_proxy.runtime.models import ServiceState, ServiceStatus
from mcp_vector_proxy.runtime.service import ProxyService

__all__ = [
    "ProxyService",
    "ServiceState",
    "ServiceStatus",
]
