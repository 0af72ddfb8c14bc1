"""MCP tool surface for ctxsync (requires ``pip install ctxsync[mcp]``)."""
