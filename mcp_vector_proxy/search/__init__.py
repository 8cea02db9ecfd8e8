"""Search subpackage - ranking of catalog entries against a query."""

from mcp_vector_proxy.search.engine import SearchEngine, SearchHit, cosine_scores, rank

__all__ = ["SearchEngine", "SearchHit", "cosine_scores", "rank"]
