"""Definitions of the four fixed tools exposed to downstream agents."""

from __future__ import annotations

from typing import List

from mcp import types as mcp_types

from mcp_vector_proxy.constants import DEFAULT_DISCOVER_LIMIT

# ── Tool names ───────────────────────────────────────────────────────────

DISCOVER_TOOL_NAME = "discover_tools"
EXECUTE_TOOL_NAME = "execute_tool"
BATCH_EXECUTE_TOOL_NAME = "batch_execute"
REFRESH_TOOL_NAME = "refresh_tools"

TOOL_NAMES = (
    DISCOVER_TOOL_NAME,
    EXECUTE_TOOL_NAME,
    BATCH_EXECUTE_TOOL_NAME,
    REFRESH_TOOL_NAME,
)

_OPERATION_NAME_PROP = {
    "type": "string",
    "description": "Exact tool name as returned by discover_tools.",
}
_ARGUMENTS_PROP = {
    "type": "object",
    "description": "Arguments matching the tool's parameterSchema (from discover_tools results).",
    "default": {},
}


def build_tool_definitions(discover_limit: int = DEFAULT_DISCOVER_LIMIT) -> List[mcp_types.Tool]:
    """Return the fixed tool list; only the advertised default limit varies."""
    discover = mcp_types.Tool(
        name=DISCOVER_TOOL_NAME,
        description=(
            "Semantic search over all available MCP tools. Returns tools ranked by relevance, "
            "each with its exact name, description, relevance score (0-1), and parameterSchema "
            "showing the required arguments. ALWAYS call this before execute_tool or "
            "batch_execute. Use specific queries ('create a GitHub issue') rather than broad "
            "ones, and call it again with a different query if your task spans several domains. "
            "Relevance above 0.7 is a strong match; below 0.5 the tool is likely unrelated."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Specific natural-language description of the operation you want to perform.",
                },
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "description": (
                        f"Max results to return (default: {discover_limit}). "
                        "Increase if results seem incomplete."
                    ),
                    "default": discover_limit,
                },
            },
            "required": ["query"],
        },
    )

    execute = mcp_types.Tool(
        name=EXECUTE_TOOL_NAME,
        description=(
            "Execute a single MCP tool by its exact name with arguments matching its "
            "parameterSchema. Discover the tool first with discover_tools. For compound tasks "
            "that need several independent tools, prefer batch_execute."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "operationName": _OPERATION_NAME_PROP,
                "tool_name": {**_OPERATION_NAME_PROP, "description": "Alias of operationName."},
                "arguments": _ARGUMENTS_PROP,
            },
            "required": ["operationName"],
        },
    )

    batch = mcp_types.Tool(
        name=BATCH_EXECUTE_TOOL_NAME,
        description=(
            "Execute multiple MCP tools in parallel in a single call. Each entry needs an "
            "operationName (exact, from discover_tools) and its arguments. Results come back in "
            "the same order as the calls array, each with its own success status; one failing "
            "call does not affect the others."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "calls": {
                    "type": "array",
                    "minItems": 1,
                    "description": "Tools to execute in parallel.",
                    "items": {
                        "type": "object",
                        "properties": {
                            "operationName": _OPERATION_NAME_PROP,
                            "tool_name": {
                                **_OPERATION_NAME_PROP,
                                "description": "Alias of operationName.",
                            },
                            "arguments": _ARGUMENTS_PROP,
                        },
                        "required": ["operationName"],
                    },
                },
            },
            "required": ["calls"],
        },
    )

    refresh = mcp_types.Tool(
        name=REFRESH_TOOL_NAME,
        description=(
            "Force an immediate re-index of all tools from the upstream aggregator. Use this if "
            "discover_tools is not returning tools you know should be available, or after "
            "adding a new server to the aggregator."
        ),
        inputSchema={"type": "object", "properties": {}},
    )

    return [discover, execute, batch, refresh]
