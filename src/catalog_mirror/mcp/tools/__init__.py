"""MCP tool handlers for catalog sync operations.

Handlers wrap ``SyncService`` with async adapters, text reports and
structured error responses.
"""

from .errors import build_error_response
from .registry import ToolRegistry, ToolSpec
from .sync import SYNC_SPECS

ALL_SPECS: list[ToolSpec] = list(SYNC_SPECS)

__all__ = [
    "build_error_response",
    "ToolSpec",
    "ToolRegistry",
    "ALL_SPECS",
    "SYNC_SPECS",
]
