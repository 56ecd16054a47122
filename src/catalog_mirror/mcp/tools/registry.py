"""ToolSpec and ToolRegistry for MCP tool dispatch.

Key concepts:
- ToolSpec: Immutable dataclass linking a Tool definition, whether the tool
  changes the mirror, and an async handler with standardized signature
  (service, args) -> CallToolResult.
- ToolRegistry: Drops mutating specs in read-only mode, then provides
  list_tools() and call_tool() dispatch with error translation.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import mcp.types as types

from ...errors import AlreadyRunning, CatalogMirrorError
from ...sync.service import SyncService
from .errors import build_error_response

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Immutable specification for a single MCP tool.

    Attributes:
        tool: The MCP Tool definition (name, description, inputSchema).
        mutating: True if the tool writes to the mirror or its run state.
        handler: Async handler with signature (service, args) -> CallToolResult.
    """

    tool: types.Tool
    mutating: bool
    handler: Callable[[SyncService, dict], Awaitable[types.CallToolResult]]


class ToolRegistry:
    """Registry of ToolSpecs.

    In read-only mode only non-mutating specs are registered.
    """

    def __init__(self, specs: list[ToolSpec], read_only: bool = False):
        self.read_only = read_only
        self._specs: dict[str, ToolSpec] = {
            spec.tool.name: spec
            for spec in specs
            if not (read_only and spec.mutating)
        }

    def list_tools(self) -> list[types.Tool]:
        """Return list of types.Tool for all registered specs."""
        return [spec.tool for spec in self._specs.values()]

    def tool_count(self) -> int:
        return len(self._specs)

    async def call_tool(
        self,
        name: str,
        arguments: dict | None,
        service: SyncService,
    ) -> types.CallToolResult:
        """Dispatch tool call to registered handler.

        Exceptions raised by handlers are translated into structured
        error results; tracebacks only go to the log.

        Raises:
            ValueError: If tool name is not registered (unknown or filtered out).
        """
        spec = self._specs.get(name)
        if spec is None:
            raise ValueError(f"Unknown tool: {name}")
        args = arguments or {}
        try:
            return await spec.handler(service, args)
        except AlreadyRunning as e:
            return build_error_response("already_running", str(e))
        except ValueError as e:
            return build_error_response("validation_error", str(e))
        except CatalogMirrorError as e:
            logger.warning("Sync error in %s: %s", name, e)
            return build_error_response("sync_error", str(e))
        except Exception as e:
            logger.exception("Unexpected error in tool %s", name)
            return build_error_response("server_error", str(e))
