"""Incremental, embedding-backed index of the upstream catalog.

``CatalogIndex`` owns the current :class:`CatalogSnapshot`, the in-flight
rebuild state and the embedding cache. Readers call
:meth:`CatalogIndex.current_snapshot` and always receive a complete,
immutable snapshot; a rebuild constructs the next snapshot off to the side
and publishes it with one reference assignment.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Protocol, Sequence

from mcp_vector_proxy.catalog.models import (
    CatalogEntry,
    CatalogSnapshot,
    EmbeddingKey,
    RebuildResult,
    compute_fingerprint,
    embedding_text,
)
from mcp_vector_proxy.catalog.store import SnapshotStore
from mcp_vector_proxy.embedding.provider import EmbeddingProvider, Vector
from mcp_vector_proxy.errors import SnapshotStoreError
from mcp_vector_proxy.upstream.models import UpstreamOperation

logger = logging.getLogger(__name__)


class CatalogSource(Protocol):
    """Where the catalog comes from (the upstream client)."""

    @property
    def is_connected(self) -> bool: ...

    async def list_operations(self) -> List[UpstreamOperation]: ...


class RebuildState(str, Enum):
    IDLE = "idle"
    REBUILDING = "rebuilding"


def dedupe_operations(operations: Sequence[UpstreamOperation]) -> List[UpstreamOperation]:
    """Drop repeated names, keeping the first occurrence (upstream order)."""
    seen: Dict[str, UpstreamOperation] = {}
    for op in operations:
        if op.name in seen:
            logger.warning("Duplicate upstream operation '%s' ignored.", op.name)
            continue
        seen[op.name] = op
    return list(seen.values())


class CatalogIndex:
    """Keeps the local catalog in sync with the upstream one.

    Parameters
    ----------
    source:
        Provides ``is_connected`` and ``list_operations()``.
    embedder:
        Computes vectors for new or changed entries.
    store:
        Optional on-disk snapshot; read only on cold start, written after
        every successful rebuild.
    """

    def __init__(
        self,
        source: CatalogSource,
        embedder: EmbeddingProvider,
        store: Optional[SnapshotStore] = None,
    ) -> None:
        self._source = source
        self._embedder = embedder
        self._store = store
        self._snapshot = CatalogSnapshot.empty()
        self._state = RebuildState.IDLE
        self._degraded = False
        self._last_result: Optional[RebuildResult] = None

    # ── Read side ────────────────────────────────────────────────────────

    def current_snapshot(self) -> CatalogSnapshot:
        return self._snapshot

    @property
    def state(self) -> RebuildState:
        return self._state

    @property
    def has_built(self) -> bool:
        """True once at least one rebuild has published a snapshot."""
        return self._snapshot.built_at is not None

    @property
    def degraded(self) -> bool:
        """True while the upstream is away; the stale snapshot is still served."""
        return self._degraded

    def mark_degraded(self, degraded: bool = True) -> None:
        if degraded != self._degraded:
            logger.info("Catalog %s.", "marked degraded" if degraded else "no longer degraded")
        self._degraded = degraded

    @property
    def last_result(self) -> Optional[RebuildResult]:
        return self._last_result

    async def upstream_fingerprint(self) -> str:
        """Fingerprint of the live upstream catalog (no index mutation)."""
        operations = dedupe_operations(await self._source.list_operations())
        return compute_fingerprint(operations)

    # ── Write side ───────────────────────────────────────────────────────

    async def rebuild(self, reason: str = "startup") -> RebuildResult:
        """Re-sync with the upstream catalog.

        Returns a no-op result when the upstream is disconnected, when a
        rebuild is already running (the concurrent request is dropped), or
        when the fingerprint is unchanged. Errors from the upstream or the
        embedding provider propagate; persistence errors are only logged.
        """
        if not self._source.is_connected:
            logger.info("[%s] Skipping index build: upstream not connected.", reason)
            return RebuildResult.noop(reason, "disconnected", total=len(self._snapshot))
        if self._state is RebuildState.REBUILDING:
            logger.info("[%s] Re-index already in progress, skipping.", reason)
            return RebuildResult.noop(reason, "in_progress", total=len(self._snapshot))

        self._state = RebuildState.REBUILDING
        try:
            result = await self._rebuild(reason)
        finally:
            self._state = RebuildState.IDLE
        self._last_result = result
        return result

    async def _rebuild(self, reason: str) -> RebuildResult:
        operations = dedupe_operations(await self._source.list_operations())
        fingerprint = compute_fingerprint(operations)
        previous = self._snapshot

        if fingerprint == previous.fingerprint and not previous.is_empty:
            logger.info("[%s] No changes detected (%d operations).", reason, len(operations))
            self.mark_degraded(False)
            return RebuildResult(
                reason=reason,
                unchanged=len(previous),
                total=len(previous),
                skipped=True,
                skip_reason="unchanged",
                indexed_at=previous.built_at,
            )

        cache = await self._seed_cache(previous)

        added = 0
        entries: List[CatalogEntry] = []
        for op in operations:
            key: EmbeddingKey = (op.name, op.description)
            vector: Optional[Vector] = cache.get(key)
            if vector is None:
                vector = await self._embedder.embed(embedding_text(op.name, op.description))
                cache[key] = vector
                added += 1
            entries.append(
                CatalogEntry(
                    name=op.name,
                    description=op.description,
                    schema=op.schema,
                    embedding=vector,
                )
            )

        live_names = {op.name for op in operations}
        removed_names = tuple(n for n in previous.names() if n not in live_names)
        snapshot = CatalogSnapshot(
            entries=tuple(entries),
            built_at=datetime.now(timezone.utc),
            fingerprint=fingerprint,
        )
        self._snapshot = snapshot
        self.mark_degraded(False)

        persisted = await self._persist(snapshot)
        unchanged = len(entries) - added
        logger.info(
            "[%s] +%d new, -%d removed, %d unchanged. Total: %d.",
            reason,
            added,
            len(removed_names),
            unchanged,
            len(entries),
        )
        return RebuildResult(
            reason=reason,
            added=added,
            removed=len(removed_names),
            unchanged=unchanged,
            total=len(entries),
            persisted=persisted,
            indexed_at=snapshot.built_at,
            removed_names=removed_names,
        )

    async def _seed_cache(self, previous: CatalogSnapshot) -> Dict[EmbeddingKey, Vector]:
        cache = previous.embedding_cache()
        if previous.is_empty and self._store is not None:
            persisted = await asyncio.to_thread(self._store.load)
            if persisted is not None:
                for key, vector in persisted.embedding_cache().items():
                    cache.setdefault(key, vector)
                logger.info("Seeded embedding cache from %s (%d entries).", self._store.path, len(persisted))
        return cache

    async def _persist(self, snapshot: CatalogSnapshot) -> bool:
        if self._store is None:
            return True
        try:
            await asyncio.to_thread(self._store.save, snapshot)
        except SnapshotStoreError as exc:
            logger.error("Snapshot persistence failed; keeping in-memory catalog: %s", exc)
            return False
        return True
