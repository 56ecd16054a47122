"""MCP Server for catalog mirror sync using stdio transport.

This module implements the Model Context Protocol server that lets an
agent start, watch and cancel catalog syncs and review orphaned entities.

Transport: stdio
Protocol: JSON-RPC 2.0 over MCP
"""

import argparse
import asyncio
import logging
import sys

import mcp.server.stdio
import mcp.types as types
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from .. import __version__
from ..config import DEFAULT_STATE_DIR
from ..core.async_utils import run_sync
from ..logger import DEFAULT_LOG_FILE, setup_logging
from ..sync.service import SyncService
from .lifespan import server_lifespan
from .tools import ALL_SPECS, ToolRegistry, build_error_response
from .tools.registry import ToolSpec

logger = logging.getLogger(__name__)

server = Server("catalog-mirror")

# Global service instance (initialized in lifespan)
_sync_service: SyncService | None = None

# Global registry instance (initialized in main)
_registry: ToolRegistry | None = None


# ---------------------------------------------------------------------------
# Ping tool (always available)
# ---------------------------------------------------------------------------


async def _handle_ping(
    service: SyncService, args: dict
) -> types.CallToolResult:
    """Handle ping tool -- test catalog connectivity."""
    try:
        source = service.source_for(service.default_tenant())
        categories = await run_sync(source.validate_connection)
        return types.CallToolResult(
            content=[
                types.TextContent(
                    type="text",
                    text=(
                        "Catalog mirror connected successfully. "
                        f"{categories} categories upstream."
                    ),
                )
            ]
        )
    except Exception as e:
        return types.CallToolResult(
            content=[
                types.TextContent(
                    type="text",
                    text=(
                        f"Catalog connection failed: {e}. Check "
                        "CATALOG_API_URL, CATALOG_API_TOKEN, CATALOG_PROPERTY_ID."
                    ),
                )
            ],
            isError=True,
        )


PING_SPEC = ToolSpec(
    tool=types.Tool(
        name="ping",
        description="Test catalog connectivity and report the number of upstream categories",
        inputSchema={
            "type": "object",
            "properties": {},
            "required": [],
        },
    ),
    mutating=False,
    handler=_handle_ping,
)


# ---------------------------------------------------------------------------
# Global accessors
# ---------------------------------------------------------------------------


def get_service() -> SyncService:
    """Get the global SyncService instance.

    Raises:
        RuntimeError: If the service is not initialized
    """
    if _sync_service is None:
        raise RuntimeError(
            "SyncService not initialized. Server lifespan not started."
        )
    return _sync_service


def set_service(service: SyncService | None) -> None:
    global _sync_service
    _sync_service = service


def get_registry() -> ToolRegistry:
    """Get the global ToolRegistry instance.

    Raises:
        RuntimeError: If registry is not initialized
    """
    if _registry is None:
        raise RuntimeError("ToolRegistry not initialized.")
    return _registry


def set_registry(registry: ToolRegistry | None) -> None:
    global _registry
    _registry = registry


# ---------------------------------------------------------------------------
# MCP protocol handlers
# ---------------------------------------------------------------------------


@server.list_tools()
async def handle_list_tools() -> list[types.Tool]:
    """List the registered tools."""
    return get_registry().list_tools()


@server.call_tool()
async def handle_call_tool(
    name: str, arguments: dict | None
) -> types.CallToolResult:
    """Handle tool execution via ToolRegistry dispatch.

    Args:
        name: The name of the tool to execute.
        arguments: Tool arguments (optional).

    Returns:
        CallToolResult with tool output content and optional isError flag.
    """
    service = get_service()
    try:
        return await get_registry().call_tool(name, arguments, service)
    except ValueError as e:
        # Unknown or filtered-out tool name
        return build_error_response("unknown_tool", str(e))


# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------


async def main(config_overrides: dict | None = None):
    """Run the MCP server with stdio transport.

    Args:
        config_overrides: Optional dict with config values to override
            (url, token, property_id, insecure, state_dir, log_file, read_only)
    """
    overrides = dict(config_overrides or {})
    log_file = overrides.pop("log_file", None)
    read_only = overrides.pop("read_only", False)

    # Must happen before the stdio transport opens
    setup_logging(mode="mcp", log_file=log_file)

    all_specs = [PING_SPEC] + ALL_SPECS
    registry = ToolRegistry(all_specs, read_only=read_only)
    logger.info(
        "Registered %d tools (of %d total)",
        registry.tool_count(),
        len(all_specs),
    )
    if read_only:
        print(
            f"Read-only mode ({registry.tool_count()} of {len(all_specs)} tools enabled)",
            file=sys.stderr,
        )
    set_registry(registry)

    # set_service() is called here rather than in the lifespan so that
    # running as ``python -m catalog_mirror.mcp.server`` updates this module
    # and not a second import of it.
    async with server_lifespan(config_overrides=overrides or None) as ctx:
        set_service(ctx["service"])
        try:
            async with mcp.server.stdio.stdio_server() as (
                read_stream,
                write_stream,
            ):
                init_options = InitializationOptions(
                    server_name="catalog-mirror",
                    server_version=__version__,
                    capabilities=server.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={},
                    ),
                )
                await server.run(read_stream, write_stream, init_options)
        finally:
            set_service(None)
            set_registry(None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Catalog Mirror - MCP server for syncing a remote catalog into a local mirror",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with default config (from .env or .catalog_mirror/config.yml)
  catalog-mirror

  # Override connection settings
  catalog-mirror --url https://catalog.example.com --property-id 42

  # Only expose status, history and orphan listing
  catalog-mirror --read-only

Note: This server uses stdio transport for JSON-RPC communication with MCP clients.
All user-facing messages are written to stderr.
        """,
    )
    parser.add_argument(
        "--url",
        help="Override catalog API URL (takes precedence over CATALOG_API_URL and config files)",
    )
    parser.add_argument(
        "--token",
        help="Override API token (visible in process list -- prefer CATALOG_API_TOKEN)",
    )
    parser.add_argument(
        "--property-id",
        help="Override website property id (takes precedence over CATALOG_PROPERTY_ID)",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip SSL certificate verification (use only for development)",
    )
    parser.add_argument(
        "--state-dir",
        help=f"Directory for mirror state and lock files (default: {DEFAULT_STATE_DIR})",
    )
    parser.add_argument(
        "--log-file",
        default=DEFAULT_LOG_FILE,
        help=f"Log file path (default: {DEFAULT_LOG_FILE})",
    )
    parser.add_argument(
        "--read-only",
        action="store_true",
        help="Register only tools that do not modify the mirror",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"catalog-mirror version {__version__}",
    )
    return parser


def overrides_from_args(args: argparse.Namespace) -> dict:
    """Config overrides for the options actually given on the command line."""
    config_overrides: dict = {}
    if args.url:
        config_overrides["url"] = args.url
    if args.token:
        config_overrides["token"] = args.token
    if args.property_id:
        config_overrides["property_id"] = args.property_id
    if args.insecure:
        config_overrides["insecure"] = True
    if args.state_dir:
        config_overrides["state_dir"] = args.state_dir
    if args.log_file:
        config_overrides["log_file"] = args.log_file
    if args.read_only:
        config_overrides["read_only"] = True
    return config_overrides


def run() -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    args = build_parser().parse_args()
    config_overrides = overrides_from_args(args)

    shown = [k for k in config_overrides if k != "token"]
    if shown:
        print(f"Config overrides from CLI: {', '.join(shown)}", file=sys.stderr)

    try:
        asyncio.run(main(config_overrides=config_overrides or None))
    except RuntimeError:
        # Error already printed to stderr by lifespan manager
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    run()
