"""Pydantic configuration models for MCP Vector Proxy.

Every section has defaults so the proxy runs with no config file at all;
only the upstream token must come from somewhere (file, ``.env`` or the
environment).
"""

from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from mcp_vector_proxy.constants import (
    BACKOFF_BASE,
    BACKOFF_CAP,
    DEFAULT_DISCOVER_LIMIT,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_HOST,
    DEFAULT_MODEL_CACHE_DIR,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_PORT,
    DEFAULT_SNAPSHOT_FILE,
    DEFAULT_UPSTREAM_ARGS,
    DEFAULT_UPSTREAM_COMMAND,
    RECONNECT_DELAY,
    RRF_K,
    TOKEN_ENV_VAR,
    UPSTREAM_INIT_TIMEOUT,
)


class UpstreamSettings(BaseModel):
    """How to launch and supervise the upstream aggregator session."""

    command: str = Field(default=DEFAULT_UPSTREAM_COMMAND, min_length=1)
    args: List[str] = Field(default_factory=lambda: list(DEFAULT_UPSTREAM_ARGS))
    env: Dict[str, str] = Field(default_factory=dict)
    token: Optional[str] = Field(
        default=None,
        description=f"Aggregator credential. Falls back to ${TOKEN_ENV_VAR}.",
    )
    token_env: str = Field(
        default=TOKEN_ENV_VAR,
        min_length=1,
        description="Environment variable used to hand the token to the child process.",
    )
    init_timeout: float = Field(default=UPSTREAM_INIT_TIMEOUT, gt=0)
    backoff_base: float = Field(default=BACKOFF_BASE, gt=0)
    backoff_cap: float = Field(default=BACKOFF_CAP, gt=0)
    reconnect_delay: float = Field(default=RECONNECT_DELAY, ge=0)

    @field_validator("command")
    @classmethod
    def _strip_command(cls, v: str) -> str:
        return v.strip()

    def resolve_token(self) -> str:
        """Return the configured token, or the one in the environment, or ``""``."""
        token = (self.token or "").strip()
        if token and not token.startswith("${"):
            return token
        return os.environ.get(self.token_env, "").strip()


class ServerSettings(BaseModel):
    """Downstream listener settings."""

    transport: Literal["stdio", "http"] = "stdio"
    host: str = DEFAULT_HOST
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)

    @field_validator("transport", mode="before")
    @classmethod
    def _normalise_transport(cls, v: str) -> str:
        """Accept 'streamable-http' and 'sse' as shorthands for 'http'."""
        if isinstance(v, str) and v.strip().lower() in ("streamable-http", "sse"):
            return "http"
        return v


class IndexSettings(BaseModel):
    """Catalog index behaviour."""

    snapshot_file: str = DEFAULT_SNAPSHOT_FILE
    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)
    discover_limit: int = Field(default=DEFAULT_DISCOVER_LIMIT, ge=1)


class EmbeddingSettings(BaseModel):
    """Embedding model selection."""

    model: str = Field(default=DEFAULT_EMBEDDING_MODEL, min_length=1)
    cache_dir: str = DEFAULT_MODEL_CACHE_DIR
    device: Optional[str] = Field(
        default=None,
        description="Torch device, e.g. 'cpu' or 'cuda'. Auto-detected when unset.",
    )


class SearchSettings(BaseModel):
    """Ranking options."""

    hybrid: bool = Field(
        default=False,
        description="Fuse cosine ranking with keyword-overlap ranking (reciprocal rank fusion).",
    )
    rrf_k: int = Field(default=RRF_K, ge=1)


class ProxyConfig(BaseModel):
    """Top-level configuration document."""

    version: str = "1"
    upstream: UpstreamSettings = Field(default_factory=UpstreamSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    index: IndexSettings = Field(default_factory=IndexSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)

    @field_validator("version", mode="before")
    @classmethod
    def _coerce_version(cls, v: object) -> str:
        return str(v)
