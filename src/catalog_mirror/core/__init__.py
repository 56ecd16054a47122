"""Remote catalog access shared between the CLI and the MCP server."""

from .async_utils import run_sync
from .client import CatalogClient
from .static_source import StaticSource

__all__ = ["CatalogClient", "StaticSource", "run_sync"]
