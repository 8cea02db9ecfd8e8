"""Allow ``python -m mcp_vector_proxy``."""

from mcp_vector_proxy.cli import main

main()
