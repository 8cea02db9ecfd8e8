"""Tests for cosine ranking and the optional hybrid ordering."""

from __future__ import annotations

import numpy as np
import pytest

from mcp_vector_proxy.catalog.models import CatalogEntry, CatalogSnapshot
from mcp_vector_proxy.search.engine import (
    SearchEngine,
    SearchHit,
    _tokenize,
    cosine_scores,
    keyword_scores,
    rank,
)


def _entry(name: str, embedding: tuple[float, ...], description: str = "") -> CatalogEntry:
    return CatalogEntry(
        name=name,
        description=description or f"{name} description",
        schema={"type": "object"},
        embedding=embedding,
    )


def _snapshot(*entries: CatalogEntry) -> CatalogSnapshot:
    return CatalogSnapshot(entries=tuple(entries), fingerprint="fp")


class TestCosineScores:
    def test_zero_magnitude_row_scores_zero(self) -> None:
        matrix = np.array([[0.0, 0.0], [1.0, 0.0]])
        scores = cosine_scores(matrix, [1.0, 0.0])
        assert scores[0] == 0.0
        assert scores[1] == pytest.approx(1.0)

    def test_zero_query_scores_zero(self) -> None:
        scores = cosine_scores(np.array([[1.0, 0.0], [0.0, 1.0]]), [0.0, 0.0])
        assert list(scores) == [0.0, 0.0]

    def test_dimension_mismatch_raises(self) -> None:
        with pytest.raises(ValueError, match="dimensions"):
            cosine_scores(np.array([[1.0, 0.0]]), [1.0, 0.0, 0.0])


class TestRank:
    def test_orders_by_similarity(self) -> None:
        snapshot = _snapshot(
            _entry("A", (1.0, 0.0)),
            _entry("B", (0.0, 1.0)),
            _entry("C", (0.9, 0.1)),
        )
        hits = rank(snapshot, (1.0, 0.0), 3)
        assert [h.entry.name for h in hits] == ["A", "C", "B"]
        assert hits[0].relevance == 1.0
        assert hits[1].relevance == pytest.approx(0.9939, abs=1e-4)
        assert hits[2].relevance == 0.0

    def test_limit_truncates(self) -> None:
        snapshot = _snapshot(_entry("A", (1.0, 0.0)), _entry("B", (0.0, 1.0)))
        assert len(rank(snapshot, (1.0, 0.0), 1)) == 1

    def test_limit_below_one_returns_one(self) -> None:
        snapshot = _snapshot(_entry("A", (1.0, 0.0)), _entry("B", (0.0, 1.0)))
        assert len(rank(snapshot, (1.0, 0.0), 0)) == 1
        assert len(rank(snapshot, (1.0, 0.0), -5)) == 1

    def test_limit_above_size_returns_all(self) -> None:
        snapshot = _snapshot(_entry("A", (1.0, 0.0)), _entry("B", (0.0, 1.0)))
        assert len(rank(snapshot, (1.0, 0.0), 50)) == 2

    def test_ties_keep_catalog_order(self) -> None:
        snapshot = _snapshot(
            _entry("first", (0.5, 0.5)),
            _entry("second", (0.5, 0.5)),
            _entry("third", (0.5, 0.5)),
        )
        hits = rank(snapshot, (1.0, 1.0), 3)
        assert [h.entry.name for h in hits] == ["first", "second", "third"]

    def test_empty_snapshot(self) -> None:
        assert rank(CatalogSnapshot.empty(), (1.0, 0.0), 5) == []

    def test_negative_similarity_reports_zero_relevance(self) -> None:
        snapshot = _snapshot(_entry("opposite", (-1.0, 0.0)))
        hit = rank(snapshot, (1.0, 0.0), 1)[0]
        assert hit.score == pytest.approx(-1.0)
        assert hit.relevance == 0.0

    def test_to_dict(self) -> None:
        hit = SearchHit(entry=_entry("A", (1.0,), "Does A"), score=0.123456)
        assert hit.to_dict() == {
            "name": "A",
            "description": "Does A",
            "relevance": 0.1235,
            "parameterSchema": {"type": "object"},
        }


class TestHybrid:
    def test_tokenize_splits_separators(self) -> None:
        assert _tokenize("github.create_issue: Create-Issue") == [
            "github",
            "create",
            "issue",
            "create",
            "issue",
        ]

    def test_keyword_scores(self) -> None:
        entries = (_entry("send_email", (1.0,), "Send an email"), _entry("read_file", (1.0,), "Read"))
        scores = keyword_scores(entries, "send email")
        assert scores[0] == 1.0
        assert scores[1] == 0.0

    def test_keyword_match_breaks_near_tie(self) -> None:
        snapshot = _snapshot(
            _entry("read_file", (1.0, 0.01), "Read a file"),
            _entry("send_email", (1.0, 0.0), "Send an email"),
        )
        query = (1.0, 0.02)
        dense_only = rank(snapshot, query, 2)
        assert dense_only[0].entry.name == "read_file"

        hybrid = rank(snapshot, query, 2, query_text="send email", hybrid=True)
        assert hybrid[0].entry.name == "send_email"
        # The reported relevance is still the cosine similarity.
        assert hybrid[0].score == pytest.approx(dense_only[1].score)

    def test_engine_without_hybrid_ignores_text(self) -> None:
        snapshot = _snapshot(
            _entry("read_file", (1.0, 0.01), "Read a file"),
            _entry("send_email", (1.0, 0.0), "Send an email"),
        )
        engine = SearchEngine()
        hits = engine.rank(snapshot, (1.0, 0.02), 2, query_text="send email")
        assert hits[0].entry.name == "read_file"
        assert engine.hybrid is False
