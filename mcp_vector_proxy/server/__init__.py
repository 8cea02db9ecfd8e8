"""Downstream MCP surface: tools, request routing, transports and health."""
