"""MCP handler functions - registered on the MCP server instance."""

import logging
from typing import List

from mcp import types as mcp_types
from mcp.server import Server as McpServer

from mcp_vector_proxy.constants import SERVER_NAME, SERVER_VERSION
from mcp_vector_proxy.server.operations import ProxyOperations, outcome_to_result
from mcp_vector_proxy.server.tools import build_tool_definitions

logger = logging.getLogger(__name__)


def register_handlers(mcp_server: McpServer, operations: ProxyOperations) -> None:
    """Register the list-tools and call-tool handlers on *mcp_server*."""
    tools = build_tool_definitions(operations.discover_limit)

    @mcp_server.list_tools()
    async def handle_list_tools() -> List[mcp_types.Tool]:
        logger.debug("Handling listTools request...")
        return list(tools)

    # Registered directly rather than via ``@call_tool()`` so upstream
    # results are returned as-is (no content conversion, no input
    # validation against our own schemas).
    async def handle_call_tool(req: mcp_types.CallToolRequest) -> mcp_types.ServerResult:
        name = req.params.name
        logger.debug("Handling callTool: name='%s'", name)
        outcome = await operations.call(name, req.params.arguments)
        if not outcome.success:
            logger.info("callTool '%s' failed: %s", name, outcome.error)
        return mcp_types.ServerResult(outcome_to_result(outcome))

    mcp_server.request_handlers[mcp_types.CallToolRequest] = handle_call_tool
    logger.debug("MCP protocol handlers registered on server instance.")


def build_mcp_server(operations: ProxyOperations) -> McpServer:
    """Create the MCP server that every downstream session runs."""
    mcp_server = McpServer(SERVER_NAME, version=SERVER_VERSION)
    register_handlers(mcp_server, operations)
    logger.debug("MCP server instance '%s' created.", mcp_server.name)
    return mcp_server
