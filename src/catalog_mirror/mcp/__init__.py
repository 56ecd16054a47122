"""MCP stdio server exposing catalog sync operations as tools."""
