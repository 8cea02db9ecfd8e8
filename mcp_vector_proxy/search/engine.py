"""Ranking of catalog entries against a query.

Pure functions over one :class:`CatalogSnapshot` value. Nothing here mutates
the snapshot, so ranking is safe to run while a rebuild is in flight.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from mcp_vector_proxy.catalog.models import CatalogEntry, CatalogSnapshot
from mcp_vector_proxy.constants import RRF_K

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchHit:
    entry: CatalogEntry
    score: float

    @property
    def relevance(self) -> float:
        """Similarity clamped to [0, 1] and rounded to 4 decimals."""
        return round(min(max(self.score, 0.0), 1.0), 4)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.entry.name,
            "description": self.entry.description,
            "relevance": self.relevance,
            "parameterSchema": self.entry.schema,
        }


# ── Dense similarity ─────────────────────────────────────────────────────


def cosine_scores(matrix: np.ndarray, query: Sequence[float]) -> np.ndarray:
    """Cosine similarity of *query* against every row of *matrix*.

    A zero-magnitude row or query scores exactly 0 instead of NaN.
    """
    q = np.asarray(query, dtype=np.float64)
    if matrix.size == 0:
        return np.zeros(matrix.shape[0], dtype=np.float64)
    if matrix.shape[1] != q.shape[0]:
        raise ValueError(
            f"Query embedding has {q.shape[0]} dimensions, catalog has {matrix.shape[1]}."
        )
    dots = matrix @ q
    denom = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    return np.divide(dots, denom, out=np.zeros_like(dots), where=denom != 0)


def _descending(scores: np.ndarray) -> np.ndarray:
    """Indices by score, highest first; ties keep catalog order."""
    return np.argsort(-scores, kind="stable")


# ── Keyword overlap (hybrid mode) ────────────────────────────────────────

_SPLIT_RE = re.compile(r"[_\-\s:./]+")


def _tokenize(text: str) -> List[str]:
    """Lower-case, split on separators, strip empties."""
    return [t for t in _SPLIT_RE.split(text.lower()) if t]


def _keyword_score(query_tokens: List[str], doc_tokens: List[str]) -> float:
    """Word-overlap + partial-match scorer (0-1 normalized)."""
    if not query_tokens or not doc_tokens:
        return 0.0
    doc_set = set(doc_tokens)
    hits = 0.0
    for qt in query_tokens:
        if qt in doc_set:
            hits += 1.0
        elif any(qt in dt for dt in doc_tokens):
            hits += 0.5
    return hits / len(query_tokens)


def keyword_scores(entries: Sequence[CatalogEntry], query_text: str) -> np.ndarray:
    query_tokens = _tokenize(query_text)
    return np.asarray(
        [_keyword_score(query_tokens, _tokenize(f"{e.name} {e.description}")) for e in entries],
        dtype=np.float64,
    )


def _fuse(dense: np.ndarray, keyword: np.ndarray, k: int) -> np.ndarray:
    """Reciprocal rank fusion; entries with no keyword hit get no keyword term."""
    fused = np.zeros_like(dense)
    for rank, idx in enumerate(_descending(dense), start=1):
        fused[idx] += 1.0 / (k + rank)
    for rank, idx in enumerate(_descending(keyword), start=1):
        if keyword[idx] > 0.0:
            fused[idx] += 1.0 / (k + rank)
    return fused


# ── Public API ───────────────────────────────────────────────────────────


def rank(
    snapshot: CatalogSnapshot,
    query_embedding: Sequence[float],
    limit: int,
    *,
    query_text: Optional[str] = None,
    hybrid: bool = False,
    rrf_k: int = RRF_K,
) -> List[SearchHit]:
    """Rank *snapshot* entries by cosine similarity to *query_embedding*.

    Parameters
    ----------
    limit:
        Maximum number of hits; values below 1 are treated as 1.
    hybrid:
        When true (and *query_text* is given), order by reciprocal rank
        fusion of the cosine rank and a keyword-overlap rank. The reported
        score stays the cosine similarity.
    """
    if snapshot.is_empty:
        return []
    limit = max(1, int(limit))
    dense = cosine_scores(snapshot.matrix, query_embedding)

    if hybrid and query_text:
        order = _descending(_fuse(dense, keyword_scores(snapshot.entries, query_text), rrf_k))
    else:
        order = _descending(dense)

    return [SearchHit(entry=snapshot.entries[i], score=float(dense[i])) for i in order[:limit]]


class SearchEngine:
    """Ranking configured once for the process."""

    def __init__(self, *, hybrid: bool = False, rrf_k: int = RRF_K) -> None:
        self._hybrid = hybrid
        self._rrf_k = rrf_k

    @property
    def hybrid(self) -> bool:
        return self._hybrid

    def rank(
        self,
        snapshot: CatalogSnapshot,
        query_embedding: Sequence[float],
        limit: int,
        query_text: Optional[str] = None,
    ) -> List[SearchHit]:
        hits = rank(
            snapshot,
            query_embedding,
            limit,
            query_text=query_text,
            hybrid=self._hybrid,
            rrf_k=self._rrf_k,
        )
        logger.debug("Ranked %d entries, returning %d hits.", len(snapshot), len(hits))
        return hits
