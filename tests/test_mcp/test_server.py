"""Tests for the MCP server module.

Verifies:
- Command-line parsing and config overrides
- The ping tool against a reachable and an unreachable catalog
- Global service/registry accessors
- Routing through handle_call_tool / handle_list_tools

Note: Detailed handler behavior is tested in
tests/test_mcp/tools/test_sync.py -- this file only tests the server
layer.
"""

import asyncio
from unittest.mock import MagicMock, patch

import mcp.types as types
import pytest

from catalog_mirror.core.static_source import StaticSource, category
from catalog_mirror.logger import DEFAULT_LOG_FILE
from catalog_mirror.mcp.server import (
    PING_SPEC,
    _handle_ping,
    build_parser,
    get_registry,
    get_service,
    handle_call_tool,
    handle_list_tools,
    overrides_from_args,
    set_registry,
    set_service,
)
from catalog_mirror.mcp.tools import ALL_SPECS
from catalog_mirror.mcp.tools.registry import ToolRegistry

TENANT = "tenant-a-token"


def _text(result: types.CallToolResult) -> str:
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    return content.text


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


class TestArgumentParsing:
    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.url is None
        assert args.insecure is False
        assert args.read_only is False
        assert args.log_file == DEFAULT_LOG_FILE

    def test_defaults_only_carry_log_file(self):
        overrides = overrides_from_args(build_parser().parse_args([]))
        assert overrides == {"log_file": DEFAULT_LOG_FILE}

    def test_all_overrides(self):
        args = build_parser().parse_args(
            [
                "--url",
                "https://catalog.example.com",
                "--token",
                "tok",
                "--property-id",
                "42",
                "--insecure",
                "--state-dir",
                "/tmp/state",
                "--log-file",
                "/tmp/mirror.log",
                "--read-only",
            ]
        )
        assert overrides_from_args(args) == {
            "url": "https://catalog.example.com",
            "token": "tok",
            "property_id": "42",
            "insecure": True,
            "state_dir": "/tmp/state",
            "log_file": "/tmp/mirror.log",
            "read_only": True,
        }

    def test_version(self, capsys):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--version"])
        assert "catalog-mirror version" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Ping
# ---------------------------------------------------------------------------


class TestPing:
    def test_connected(self, make_service):
        source = StaticSource(categories=[category("1", "Breast")])
        service = make_service({TENANT: source})

        result = asyncio.run(_handle_ping(service, {}))

        assert not result.isError
        assert _text(result) == (
            "Catalog mirror connected successfully. 1 categories upstream."
        )

    def test_unreachable(self, make_service):
        source = StaticSource(fail_on=["validate_connection"])
        service = make_service({TENANT: source})

        result = asyncio.run(_handle_ping(service, {}))

        assert result.isError
        assert "Catalog connection failed" in _text(result)
        assert "CATALOG_API_URL" in _text(result)

    def test_ping_is_read_only(self):
        assert PING_SPEC.mutating is False


# ---------------------------------------------------------------------------
# Accessors and routing
# ---------------------------------------------------------------------------


class TestAccessors:
    def test_service_not_initialized(self):
        set_service(None)
        with pytest.raises(RuntimeError, match="SyncService not initialized"):
            get_service()

    def test_registry_not_initialized(self):
        set_registry(None)
        with pytest.raises(RuntimeError, match="ToolRegistry not initialized"):
            get_registry()


class TestRouting:
    def setup_method(self):
        set_registry(ToolRegistry([PING_SPEC] + ALL_SPECS))
        set_service(MagicMock())

    def teardown_method(self):
        set_registry(None)
        set_service(None)

    def test_list_tools(self):
        tools = asyncio.run(handle_list_tools())
        names = [t.name for t in tools]
        assert names[0] == "ping"
        assert "catalog_sync_start" in names
        for tool in tools:
            assert tool.inputSchema["type"] == "object"
            assert "required" in tool.inputSchema

    def test_read_only_listing(self):
        set_registry(ToolRegistry([PING_SPEC] + ALL_SPECS, read_only=True))
        names = [t.name for t in asyncio.run(handle_list_tools())]
        assert "ping" in names
        assert "catalog_sync_start" not in names

    @patch("catalog_mirror.mcp.server.get_registry")
    def test_call_routes_to_registry(self, mock_get_registry):
        mock_registry = MagicMock()
        mock_get_registry.return_value = mock_registry
        expected = types.CallToolResult(
            content=[types.TextContent(type="text", text="ok")]
        )

        async def fake_call_tool(name, args, service):
            return expected

        mock_registry.call_tool = MagicMock(side_effect=fake_call_tool)

        result = asyncio.run(
            handle_call_tool("catalog_sync_status", {"session_id": "sync_1"})
        )

        mock_registry.call_tool.assert_called_once_with(
            "catalog_sync_status", {"session_id": "sync_1"}, get_service()
        )
        assert result is expected

    def test_unknown_tool(self):
        result = asyncio.run(handle_call_tool("nonexistent_tool", {}))
        assert result.isError
        assert "Error (unknown_tool)" in _text(result)
