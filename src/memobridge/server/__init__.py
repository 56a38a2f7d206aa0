"""MCP tool surface for memobridge."""
