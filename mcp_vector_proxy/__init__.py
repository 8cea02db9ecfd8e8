"""
MCP Vector Proxy - semantic tool discovery in front of an MCP aggregator.

The proxy keeps one live session to an upstream aggregator, indexes its tool
catalog with dense embeddings, and exposes four fixed tools to agents
(discover, execute, batch execute, refresh) instead of the full catalog.
"""

from mcp_vector_proxy.constants import SERVER_NAME, SERVER_VERSION

__version__ = SERVER_VERSION
__app_name__ = SERVER_NAME

__all__ = [
    "SERVER_NAME",
    "SERVER_VERSION",
    "__version__",
    "__app_name__",
]
