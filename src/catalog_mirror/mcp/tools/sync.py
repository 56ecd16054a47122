"""MCP tool handlers for catalog sync runs and orphan review.

Defines seven tools:

- ``catalog_sync_start`` -- start a full sync (optionally wait for it).
- ``catalog_sync_status`` -- status of a run, or of the active/latest run.
- ``catalog_sync_cancel`` -- ask an active run to stop.
- ``catalog_sync_case`` -- sync a single case.
- ``catalog_orphans_list`` -- orphans left behind by a session.
- ``catalog_orphans_delete`` -- delete reviewed orphans.
- ``catalog_sync_history`` -- recent runs and registry statistics.
"""

from __future__ import annotations

import logging
from typing import Any

import mcp.types as types

from ...core.async_utils import run_sync
from ...errors import MappingError
from ...sync.mapper import validate_external_id
from ...sync.models import RecordKind, RunHandle, Trigger
from ...sync.reporter import (
    format_deletion_result,
    format_orphan_report,
    format_progress,
    format_run_report,
    format_snapshot,
    orphans_to_json,
    run_to_json,
)
from ...sync.service import SyncService
from .registry import ToolSpec

logger = logging.getLogger(__name__)

_SESSION_ID = {
    "type": "string",
    "description": "Sync session id (sync_...). Defaults to the latest run.",
}
_KIND = {
    "type": "string",
    "enum": [k.value for k in RecordKind],
    "description": "Restrict to one record kind",
}


def _text(text: str, structured: dict[str, Any] | None = None) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        structuredContent=structured,
    )


def _kind_arg(args: dict) -> RecordKind | None:
    raw = args.get("kind")
    if not raw:
        return None
    try:
        return RecordKind(raw)
    except ValueError:
        raise ValueError(
            f"Invalid kind '{raw}': expected one of "
            + ", ".join(k.value for k in RecordKind)
        ) from None


def _session_arg(service: SyncService, tenant: str, args: dict) -> str:
    session_id = args.get("session_id") or service.last_session_id(tenant)
    if not session_id:
        raise ValueError("No finished full sync run found; pass session_id.")
    return str(session_id)


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


async def _handle_sync_start(
    service: SyncService, args: dict
) -> types.CallToolResult:
    tenant = service.default_tenant()
    handle = await run_sync(service.start_run, tenant, Trigger.MANUAL)
    logger.info("Started sync run %s", handle.session_id)

    if not args.get("wait", False):
        return _text(
            f"Sync run {handle.session_id} started. "
            "Poll catalog_sync_status for progress.",
            {"session_id": handle.session_id, "status": "started"},
        )

    timeout = float(args.get("timeout", 300))
    snapshot = await run_sync(service.wait, handle, timeout)
    return _text(
        format_snapshot(snapshot),
        snapshot.model_dump(mode="json", exclude={"tenant_token"}),
    )


async def _handle_sync_status(
    service: SyncService, args: dict
) -> types.CallToolResult:
    tenant = service.default_tenant()
    session_id = args.get("session_id")

    if not session_id:
        progress = service.get_progress(tenant)
        if progress is not None:
            return _text(
                format_progress(progress), progress.model_dump(mode="json")
            )
        recent = service.recent_runs(limit=1, tenant_token=tenant)
        if not recent:
            return _text("No sync runs recorded yet.")
        return _text(format_run_report(recent[0]), run_to_json(recent[0]))

    snapshot = service.get_run_status(
        RunHandle(session_id=str(session_id), tenant_token=tenant)
    )
    return _text(
        format_snapshot(snapshot),
        snapshot.model_dump(mode="json", exclude={"tenant_token"}),
    )


async def _handle_sync_cancel(
    service: SyncService, args: dict
) -> types.CallToolResult:
    session_id = args.get("session_id")
    if not session_id:
        raise ValueError("session_id is required")
    handle = RunHandle(
        session_id=str(session_id), tenant_token=service.default_tenant()
    )
    if service.cancel_run(handle):
        return _text(f"Cancellation requested for {session_id}.")
    return _text(f"Sync run {session_id} is not active.")


async def _handle_sync_case(
    service: SyncService, args: dict
) -> types.CallToolResult:
    case_id = args.get("case_id")
    if case_id is None or str(case_id).strip() == "":
        raise ValueError("case_id is required")
    try:
        case_id = validate_external_id(case_id, RecordKind.CASE)
    except MappingError as exc:
        raise ValueError(f"Invalid case_id: {exc}") from None
    run = await run_sync(service.sync_case, service.default_tenant(), case_id)
    return _text(format_run_report(run), run_to_json(run))


async def _handle_sync_history(
    service: SyncService, args: dict
) -> types.CallToolResult:
    tenant = service.default_tenant()
    limit = int(args.get("limit", 10))
    if not (1 <= limit <= 100):
        raise ValueError(f"Invalid limit {limit}: must be between 1 and 100")

    runs = service.recent_runs(limit=limit, tenant_token=tenant)
    stats = service.stats(tenant)
    lines = [
        f"Runs: {stats['total_syncs']} total, "
        f"{stats['successful_syncs']} successful, "
        f"{stats['partial_syncs']} partial, {stats['failed_syncs']} failed",
        "Mirrored: "
        + ", ".join(f"{count} {kind}" for kind, count in stats["registry"].items()),
        "",
    ]
    for run in runs:
        lines.append(
            f"{run.started_at}  {run.session_id}  {run.status.value:<9} "
            f"processed={run.items_processed} failed={run.items_failed}"
        )
    return _text(
        "\n".join(lines).rstrip(),
        {"stats": stats, "runs": [run_to_json(r) for r in runs]},
    )


# ---------------------------------------------------------------------------
# Orphans
# ---------------------------------------------------------------------------


async def _handle_orphans_list(
    service: SyncService, args: dict
) -> types.CallToolResult:
    tenant = service.default_tenant()
    session_id = _session_arg(service, tenant, args)
    report = await run_sync(
        service.orphan_report, session_id, tenant, _kind_arg(args)
    )
    return _text(format_orphan_report(report), orphans_to_json(report))


async def _handle_orphans_delete(
    service: SyncService, args: dict
) -> types.CallToolResult:
    tenant = service.default_tenant()
    session_id = _session_arg(service, tenant, args)
    candidates = service.list_orphans(session_id, tenant, _kind_arg(args))

    wanted = args.get("external_ids")
    if wanted is not None:
        if not isinstance(wanted, list):
            raise ValueError("external_ids must be a list of strings")
        wanted_ids = {str(w) for w in wanted}
        candidates = [c for c in candidates if c.external_id in wanted_ids]

    if not candidates:
        return _text("No matching orphans to delete.")

    result = await run_sync(service.delete_orphans, candidates, session_id)
    return _text(
        format_deletion_result(result),
        {"deleted": result.deleted, "errors": result.errors},
    )


# ---------------------------------------------------------------------------
# Specs
# ---------------------------------------------------------------------------


SYNC_SPECS: list[ToolSpec] = [
    ToolSpec(
        tool=types.Tool(
            name="catalog_sync_start",
            description=(
                "Start a full catalog sync: categories, procedures, then "
                "cases, followed by orphan cleanup. Returns the session id."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=False,
                destructiveHint=True,
                idempotentHint=False,
                openWorldHint=True,
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "wait": {
                        "type": "boolean",
                        "default": False,
                        "description": "Block until the run finishes",
                    },
                    "timeout": {
                        "type": "number",
                        "default": 300,
                        "description": "Seconds to wait when wait=true",
                    },
                },
                "required": [],
            },
        ),
        mutating=True,
        handler=_handle_sync_start,
    ),
    ToolSpec(
        tool=types.Tool(
            name="catalog_sync_status",
            description=(
                "Status and progress of a sync run. Without session_id, "
                "shows the active run or the most recent one."
            ),
            annotations=types.ToolAnnotations(readOnlyHint=True),
            inputSchema={
                "type": "object",
                "properties": {"session_id": _SESSION_ID},
                "required": [],
            },
        ),
        mutating=False,
        handler=_handle_sync_status,
    ),
    ToolSpec(
        tool=types.Tool(
            name="catalog_sync_cancel",
            description=(
                "Ask an active sync run to stop. The run ends as failed "
                "and no orphans are deleted."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=False, destructiveHint=False
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "session_id": {
                        "type": "string",
                        "description": "Session id of the run to cancel",
                    }
                },
                "required": ["session_id"],
            },
        ),
        mutating=True,
        handler=_handle_sync_cancel,
    ),
    ToolSpec(
        tool=types.Tool(
            name="catalog_sync_case",
            description=(
                "Sync a single case by its catalog id. Never deletes "
                "other entities."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=False,
                destructiveHint=False,
                idempotentHint=True,
                openWorldHint=True,
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "case_id": {
                        "type": "string",
                        "description": "Catalog case id",
                    }
                },
                "required": ["case_id"],
            },
        ),
        mutating=True,
        handler=_handle_sync_case,
    ),
    ToolSpec(
        tool=types.Tool(
            name="catalog_orphans_list",
            description=(
                "List mirrored entities that a sync session did not see "
                "upstream, grouped by kind."
            ),
            annotations=types.ToolAnnotations(readOnlyHint=True),
            inputSchema={
                "type": "object",
                "properties": {"session_id": _SESSION_ID, "kind": _KIND},
                "required": [],
            },
        ),
        mutating=False,
        handler=_handle_orphans_list,
    ),
    ToolSpec(
        tool=types.Tool(
            name="catalog_orphans_delete",
            description=(
                "Delete orphaned entities found by catalog_orphans_list. "
                "Each deletion is written to the audit log."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=False, destructiveHint=True
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "session_id": _SESSION_ID,
                    "kind": _KIND,
                    "external_ids": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Only delete these external ids",
                    },
                },
                "required": [],
            },
        ),
        mutating=True,
        handler=_handle_orphans_delete,
    ),
    ToolSpec(
        tool=types.Tool(
            name="catalog_sync_history",
            description="Recent sync runs and mirrored entity counts.",
            annotations=types.ToolAnnotations(readOnlyHint=True),
            inputSchema={
                "type": "object",
                "properties": {
                    "limit": {
                        "type": "integer",
                        "default": 10,
                        "minimum": 1,
                        "maximum": 100,
                    }
                },
                "required": [],
            },
        ),
        mutating=False,
        handler=_handle_sync_history,
    ),
]
