"""Catalog value types and the catalog fingerprint."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from functools import cached_property
from typing import Any, Dict, Iterable, Optional, Protocol, Tuple

import numpy as np

EmbeddingKey = Tuple[str, str]


class _Describes(Protocol):
    name: str
    description: str
    schema: Dict[str, Any]


def serialize_schema(schema: Any) -> str:
    """Canonical JSON for a parameter schema (key order does not matter)."""
    return json.dumps(schema if schema is not None else {}, sort_keys=True, separators=(",", ":"))


def compute_fingerprint(operations: Iterable[_Describes]) -> str:
    """Deterministic digest over name, description and schema of every entry.

    Entries are sorted by name first, so upstream ordering does not affect
    the result; any schema change does.
    """
    lines = sorted(
        (f"{op.name}|{op.description or ''}|{serialize_schema(op.schema)}" for op in operations),
    )
    return hashlib.sha256("\n".join(lines).encode("utf-8")).hexdigest()


def embedding_text(name: str, description: str) -> str:
    """Text that is embedded for one catalog entry."""
    return f"{name}: {description}"


@dataclass(frozen=True)
class CatalogEntry:
    """One upstream operation together with its embedding."""

    name: str
    description: str
    schema: Dict[str, Any]
    embedding: Tuple[float, ...]

    @property
    def cache_key(self) -> EmbeddingKey:
        return (self.name, self.description)


@dataclass(frozen=True)
class CatalogSnapshot:
    """An immutable, fully built version of the catalog.

    Built off to the side by :class:`~mcp_vector_proxy.catalog.index.CatalogIndex`
    and published by swapping a single reference; never mutated afterwards.
    """

    entries: Tuple[CatalogEntry, ...] = ()
    built_at: Optional[datetime] = None
    fingerprint: str = ""

    @classmethod
    def empty(cls) -> "CatalogSnapshot":
        return cls()

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def names(self) -> Tuple[str, ...]:
        return tuple(e.name for e in self.entries)

    def embedding_cache(self) -> Dict[EmbeddingKey, Tuple[float, ...]]:
        return {e.cache_key: e.embedding for e in self.entries}

    @cached_property
    def matrix(self) -> np.ndarray:
        """Embeddings stacked row-wise in catalog order (float64)."""
        if not self.entries:
            return np.zeros((0, 0), dtype=np.float64)
        return np.asarray([e.embedding for e in self.entries], dtype=np.float64)


@dataclass(frozen=True)
class RebuildResult:
    """Outcome of one ``CatalogIndex.rebuild`` call."""

    reason: str
    added: int = 0
    removed: int = 0
    unchanged: int = 0
    total: int = 0
    skipped: bool = False
    skip_reason: Optional[str] = None
    persisted: bool = True
    indexed_at: Optional[datetime] = None
    removed_names: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def noop(cls, reason: str, skip_reason: str, *, total: int = 0) -> "RebuildResult":
        return cls(reason=reason, total=total, skipped=True, skip_reason=skip_reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "added": self.added,
            "removed": self.removed,
            "unchanged": self.unchanged,
            "total": self.total,
            "skipped": self.skipped,
            "skipReason": self.skip_reason,
            "persisted": self.persisted,
        }
