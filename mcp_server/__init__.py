"""MCP tool surface over the assistant HTTP API."""
