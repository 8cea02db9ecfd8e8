"""Embedding subpackage - text to vector providers."""

from mcp_vector_proxy.embedding.provider import (
    EmbeddingProvider,
    SentenceTransformerProvider,
    Vector,
)

__all__ = ["EmbeddingProvider", "SentenceTransformerProvider", "Vector"]
