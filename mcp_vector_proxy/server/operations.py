"""The four downstream operations: discover, execute, batch execute, refresh.

Every public coroutine returns an :class:`OperationOutcome`; exceptions from
the upstream, the embedding provider or the index are caught here and turned
into tagged failures, so nothing escapes to the MCP server layer.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Tuple

from mcp import types as mcp_types

from mcp_vector_proxy.catalog.index import CatalogIndex
from mcp_vector_proxy.constants import DEFAULT_DISCOVER_LIMIT
from mcp_vector_proxy.embedding.provider import EmbeddingProvider
from mcp_vector_proxy.errors import InvalidRequestError
from mcp_vector_proxy.search.engine import SearchEngine
from mcp_vector_proxy.server.tools import (
    BATCH_EXECUTE_TOOL_NAME,
    DISCOVER_TOOL_NAME,
    EXECUTE_TOOL_NAME,
    REFRESH_TOOL_NAME,
)

logger = logging.getLogger(__name__)

NOT_CONNECTED_MSG = "Upstream aggregator is not connected. Please wait for reconnection."
NOT_INDEXED_MSG = (
    "Upstream aggregator is not connected yet. Tools will be available shortly; "
    "try again in a few seconds."
)


class Invoker(Protocol):
    @property
    def is_connected(self) -> bool: ...

    async def invoke(
        self, name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> mcp_types.CallToolResult: ...


@dataclass(frozen=True)
class OperationOutcome:
    """Tagged success/failure of one downstream operation."""

    success: bool
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, value: Any) -> "OperationOutcome":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: str) -> "OperationOutcome":
        return cls(success=False, error=error)


def _result_to_json(result: Any) -> Any:
    if isinstance(result, mcp_types.CallToolResult):
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)
    return result


def _operation_name(call: Dict[str, Any]) -> Any:
    name = call.get("operationName")
    if name is None:
        name = call.get("tool_name")
    return name


def _parse_call(call: Any) -> Tuple[str, Dict[str, Any]]:
    """Validate one ``{operationName, arguments}`` object."""
    if not isinstance(call, dict):
        raise InvalidRequestError("Each call must be an object with operationName and arguments.")
    name = _operation_name(call)
    if not isinstance(name, str) or not name.strip():
        raise InvalidRequestError("Each call must have a non-empty operationName string.")
    arguments = call.get("arguments")
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise InvalidRequestError(f"arguments for '{name}' must be an object.")
    return name, arguments


def _parse_limit(raw: Any, default: int) -> int:
    if raw is None:
        return default
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise InvalidRequestError("limit must be a positive integer.")
    return max(1, int(raw))


class ProxyOperations:
    """Implements the fixed tool surface on top of the shared components.

    Parameters
    ----------
    upstream:
        Connected-state and ``invoke`` (the upstream client).
    index:
        The catalog index; read for discover, rebuilt for refresh.
    embedder:
        Embeds discover queries.
    engine:
        Ranks the current snapshot.
    discover_limit:
        Default result count when the caller omits ``limit``.
    """

    def __init__(
        self,
        upstream: Invoker,
        index: CatalogIndex,
        embedder: EmbeddingProvider,
        engine: SearchEngine,
        discover_limit: int = DEFAULT_DISCOVER_LIMIT,
    ) -> None:
        self._upstream = upstream
        self._index = index
        self._embedder = embedder
        self._engine = engine
        self._discover_limit = discover_limit

    @property
    def discover_limit(self) -> int:
        return self._discover_limit

    async def call(self, name: str, arguments: Optional[Dict[str, Any]]) -> OperationOutcome:
        """Dispatch one tool call by name."""
        args = arguments or {}
        if name == DISCOVER_TOOL_NAME:
            return await self.discover(args.get("query"), args.get("limit"))
        if name == EXECUTE_TOOL_NAME:
            return await self.execute(_operation_name(args), args.get("arguments"))
        if name == BATCH_EXECUTE_TOOL_NAME:
            return await self.batch_execute(args.get("calls"))
        if name == REFRESH_TOOL_NAME:
            return await self.refresh()
        return OperationOutcome.fail(f"Unknown tool: {name}")

    # ── discover ─────────────────────────────────────────────────────────

    async def discover(self, query: Any, limit: Any = None) -> OperationOutcome:
        if not self._upstream.is_connected or not self._index.has_built:
            return OperationOutcome.fail(NOT_INDEXED_MSG)
        try:
            if not isinstance(query, str) or not query.strip():
                raise InvalidRequestError("query is required and must be a non-empty string.")
            n = _parse_limit(limit, self._discover_limit)
        except InvalidRequestError as exc:
            return OperationOutcome.fail(str(exc))

        snapshot = self._index.current_snapshot()
        try:
            query_vec = await self._embedder.embed(query)
            hits = self._engine.rank(snapshot, query_vec, n, query_text=query)
        except Exception as exc:
            logger.error("discover failed for query %r: %s", query, exc, exc_info=True)
            return OperationOutcome.fail(f"Search failed: {exc}")
        logger.info("discover %r → %d hits (of %d).", query, len(hits), len(snapshot))
        return OperationOutcome.ok([hit.to_dict() for hit in hits])

    # ── execute ──────────────────────────────────────────────────────────

    async def execute(self, operation_name: Any, arguments: Any = None) -> OperationOutcome:
        if not self._upstream.is_connected:
            return OperationOutcome.fail(NOT_CONNECTED_MSG)
        try:
            name, args = _parse_call({"operationName": operation_name, "arguments": arguments})
        except InvalidRequestError as exc:
            return OperationOutcome.fail(str(exc))
        try:
            result = await self._upstream.invoke(name, args)
        except Exception as exc:
            logger.warning("execute '%s' failed: %s", name, exc)
            return OperationOutcome.fail(str(exc) or type(exc).__name__)
        return OperationOutcome.ok(result)

    # ── batch execute ────────────────────────────────────────────────────

    async def batch_execute(self, calls: Any) -> OperationOutcome:
        if not self._upstream.is_connected:
            return OperationOutcome.fail(NOT_CONNECTED_MSG)
        if not isinstance(calls, list) or not calls:
            return OperationOutcome.fail(
                "calls must be a non-empty array of {operationName, arguments} objects."
            )
        # All entries are validated before any is dispatched.
        try:
            parsed = [_parse_call(call) for call in calls]
        except InvalidRequestError as exc:
            return OperationOutcome.fail(str(exc))

        results = await asyncio.gather(*(self._invoke_one(name, args) for name, args in parsed))
        failed = sum(1 for r in results if not r["success"])
        logger.info("batch_execute: %d calls, %d failed.", len(results), failed)
        return OperationOutcome.ok(list(results))

    async def _invoke_one(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = await self._upstream.invoke(name, arguments)
        except Exception as exc:
            return {"operationName": name, "success": False, "error": str(exc) or type(exc).__name__}
        return {"operationName": name, "success": True, "result": _result_to_json(result)}

    # ── refresh ──────────────────────────────────────────────────────────

    async def refresh(self) -> OperationOutcome:
        try:
            result = await self._index.rebuild("manual")
        except Exception as exc:
            logger.error("Manual refresh failed: %s", exc)
            return OperationOutcome.fail(f"Refresh failed: {exc}")
        snapshot = self._index.current_snapshot()
        summary: Dict[str, Any] = result.to_dict()
        summary.update(
            {
                "total": len(snapshot),
                "connected": self._upstream.is_connected,
                "indexedAt": snapshot.built_at.isoformat() if snapshot.built_at else None,
            }
        )
        if not self._upstream.is_connected:
            summary["message"] = "Upstream aggregator not connected; cannot refresh."
        return OperationOutcome.ok(summary)


def outcome_to_result(outcome: OperationOutcome) -> mcp_types.CallToolResult:
    """Render an outcome as an MCP tool result.

    Upstream ``CallToolResult`` values pass through untouched; other values
    are serialised as JSON text.
    """
    if not outcome.success:
        return mcp_types.CallToolResult(
            content=[mcp_types.TextContent(type="text", text=outcome.error or "Unknown error")],
            isError=True,
        )
    value = outcome.value
    if isinstance(value, mcp_types.CallToolResult):
        return value
    text = value if isinstance(value, str) else json.dumps(value, indent=2, default=str)
    return mcp_types.CallToolResult(content=[mcp_types.TextContent(type="text", text=text)])

