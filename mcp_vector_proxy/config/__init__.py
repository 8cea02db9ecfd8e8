"""Configuration loading and validation for MCP Vector Proxy."""

from mcp_vector_proxy.config.env import expand_env_vars, load_env_file
from mcp_vector_proxy.config.loader import (
    find_config_file,
    load_proxy_config,
    require_upstream_token,
)
from mcp_vector_proxy.config.schema import (
    EmbeddingSettings,
    IndexSettings,
    ProxyConfig,
    SearchSettings,
    ServerSettings,
    UpstreamSettings,
)

__all__ = [
    "EmbeddingSettings",
    "IndexSettings",
    "ProxyConfig",
    "SearchSettings",
    "ServerSettings",
    "UpstreamSettings",
    "expand_env_vars",
    "find_config_file",
    "load_env_file",
    "load_proxy_config",
    "require_upstream_token",
]
