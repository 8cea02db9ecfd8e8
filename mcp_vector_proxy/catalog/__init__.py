"""Catalog subpackage - snapshot model, incremental index and persistence."""

from mcp_vector_proxy.catalog.index import CatalogIndex, RebuildState
from mcp_vector_proxy.catalog.models import (
    CatalogEntry,
    CatalogSnapshot,
    RebuildResult,
    compute_fingerprint,
)
from mcp_vector_proxy.catalog.store import SnapshotStore

__all__ = [
    "CatalogEntry",
    "CatalogIndex",
    "CatalogSnapshot",
    "RebuildResult",
    "RebuildState",
    "SnapshotStore",
    "compute_fingerprint",
]
