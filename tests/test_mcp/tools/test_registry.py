"""Tests for ToolSpec and ToolRegistry.

Covers:
- ToolSpec creation and immutability
- ToolRegistry read-only filtering
- ToolRegistry list_tools, tool_count, call_tool
- Translation of handler exceptions into error results
"""

import asyncio
import dataclasses
import unittest
from unittest.mock import MagicMock

import mcp.types as types

from catalog_mirror.errors import AlreadyRunning, SourceUnavailable
from catalog_mirror.mcp.tools import ALL_SPECS
from catalog_mirror.mcp.tools.registry import ToolRegistry, ToolSpec


def _make_spec(name: str, mutating: bool = False, handler=None) -> ToolSpec:
    """Helper to create a ToolSpec for testing."""
    if handler is None:

        async def handler(service, args):
            return types.CallToolResult(
                content=[types.TextContent(type="text", text=f"ok:{name}")]
            )

    return ToolSpec(
        tool=types.Tool(
            name=name,
            description=f"Test tool {name}",
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        mutating=mutating,
        handler=handler,
    )


def _raising(exc: Exception):
    async def handler(service, args):
        raise exc

    return handler


def _text(result: types.CallToolResult) -> str:
    content = result.content[0]
    assert isinstance(content, types.TextContent)
    return content.text


class TestToolSpec(unittest.TestCase):
    """Test ToolSpec dataclass."""

    def test_creation(self):
        spec = _make_spec("a", mutating=True)
        self.assertEqual(spec.tool.name, "a")
        self.assertTrue(spec.mutating)

    def test_frozen(self):
        spec = _make_spec("a")
        with self.assertRaises(dataclasses.FrozenInstanceError):
            spec.mutating = True  # type: ignore[misc]


class TestToolRegistry(unittest.TestCase):
    """Test ToolRegistry filtering and dispatch."""

    def setUp(self):
        self.specs = [
            _make_spec("read_a"),
            _make_spec("write_b", mutating=True),
            _make_spec("read_c"),
        ]

    def test_all_tools_registered(self):
        registry = ToolRegistry(self.specs)
        self.assertEqual(registry.tool_count(), 3)

    def test_read_only_drops_mutating(self):
        registry = ToolRegistry(self.specs, read_only=True)
        names = [t.name for t in registry.list_tools()]
        self.assertEqual(names, ["read_a", "read_c"])

    def test_call_tool_dispatches_to_handler(self):
        registry = ToolRegistry(self.specs)
        result = asyncio.run(registry.call_tool("read_c", {}, MagicMock()))
        self.assertEqual(_text(result), "ok:read_c")

    def test_call_tool_none_arguments(self):
        seen = {}

        async def handler(service, args):
            seen["args"] = args
            return types.CallToolResult(content=[])

        registry = ToolRegistry([_make_spec("x", handler=handler)])
        asyncio.run(registry.call_tool("x", None, MagicMock()))
        self.assertEqual(seen["args"], {})

    def test_unknown_tool_raises(self):
        registry = ToolRegistry(self.specs)
        with self.assertRaises(ValueError):
            asyncio.run(registry.call_tool("nope", {}, MagicMock()))

    def test_filtered_tool_raises(self):
        registry = ToolRegistry(self.specs, read_only=True)
        with self.assertRaises(ValueError):
            asyncio.run(registry.call_tool("write_b", {}, MagicMock()))


class TestErrorTranslation(unittest.TestCase):
    """Handler exceptions become error results with the right type."""

    def _call(self, exc: Exception) -> types.CallToolResult:
        registry = ToolRegistry([_make_spec("x", handler=_raising(exc))])
        return asyncio.run(registry.call_tool("x", {}, MagicMock()))

    def test_already_running(self):
        result = self._call(AlreadyRunning("tena****"))
        self.assertTrue(result.isError)
        self.assertIn("Error (already_running)", _text(result))

    def test_validation_error(self):
        result = self._call(ValueError("limit too big"))
        self.assertIn("Error (validation_error): limit too big", _text(result))

    def test_sync_error(self):
        result = self._call(SourceUnavailable("catalog down"))
        self.assertIn("Error (sync_error): catalog down", _text(result))

    def test_server_error(self):
        result = self._call(RuntimeError("boom"))
        self.assertIn("Error (server_error): boom", _text(result))


class TestShippedSpecs(unittest.TestCase):
    def test_names_unique(self):
        names = [spec.tool.name for spec in ALL_SPECS]
        self.assertEqual(len(names), len(set(names)))

    def test_read_only_subset(self):
        registry = ToolRegistry(ALL_SPECS, read_only=True)
        self.assertEqual(
            sorted(t.name for t in registry.list_tools()),
            [
                "catalog_orphans_list",
                "catalog_sync_history",
                "catalog_sync_status",
            ],
        )
