"""Sync report formatting functions.

Provides human-readable and machine-readable output for sync operations:

- ``format_run_report`` -- post-run summary.
- ``format_progress`` -- one-screen view of an active run.
- ``format_orphan_report`` -- orphan candidates grouped by kind.
- ``format_deletion_result`` -- outcome of an orphan deletion.
- ``run_to_json`` / ``orphans_to_json`` -- structured dicts for MCP output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import (
        DeletionResult,
        OrphanReport,
        ProgressSnapshot,
        RunSnapshot,
        SyncRun,
    )

# Orphans listed per kind before the rest are summarised by count
MAX_LISTED_ORPHANS = 25


# ------------------------------------------------------------------
# Runs
# ------------------------------------------------------------------


def format_run_report(run: SyncRun) -> str:
    """Format a finished (or running) sync run as human-readable text.

    Error and warning sections are only included when non-empty.
    """
    lines: list[str] = []

    lines.append(f"Sync run {run.session_id} [{run.status.value}]")
    lines.append(f"Trigger: {run.trigger.value}")
    lines.append(f"Started: {run.started_at}")
    if run.ended_at:
        lines.append(f"Completed: {run.ended_at}")
    if run.failed_stage:
        lines.append(f"Failed during: {run.failed_stage}")
    lines.append("")

    lines.append(
        f"Processed {run.items_processed} records: "
        f"{run.created} created, {run.updated} updated, "
        f"{run.unchanged} unchanged, {run.items_failed} failed"
    )
    if run.orphans_deleted:
        lines.append(f"Orphans deleted: {run.orphans_deleted}")
    lines.append("")

    if run.error_summary:
        lines.append("Errors:")
        for message in run.error_summary:
            lines.append(f"  {message}")
        lines.append("")

    if run.warnings:
        lines.append("Warnings:")
        for message in run.warnings:
            lines.append(f"  {message}")
        lines.append("")

    return "\n".join(lines).rstrip()


def format_snapshot(snapshot: RunSnapshot) -> str:
    lines = [
        f"Sync run {snapshot.session_id} [{snapshot.status.value}]",
        f"  Stage:     {snapshot.stage.value} ({snapshot.percent}%)",
        f"  Processed: {snapshot.items_processed}",
        f"  Failed:    {snapshot.items_failed}",
    ]
    if snapshot.ended_at:
        lines.append(f"  Completed: {snapshot.ended_at}")
    for message in snapshot.error_summary:
        lines.append(f"  ! {message}")
    return "\n".join(lines)


def format_progress(progress: ProgressSnapshot | None) -> str:
    if progress is None:
        return "No sync run in progress."
    lines = [
        f"Sync run {progress.session_id}: {progress.stage.value} "
        f"({progress.percent}%)",
        f"  Processed: {progress.items_processed}, "
        f"failed: {progress.items_failed}",
    ]
    if progress.recent_items:
        lines.append("  Recent:")
        lines.extend(f"    {item}" for item in progress.recent_items)
    return "\n".join(lines)


def run_to_json(run: SyncRun) -> dict[str, Any]:
    """Structured form of a run for MCP ``structuredContent``.

    The tenant token and the held keys are left out.
    """
    data = run.model_dump(mode="json", exclude={"tenant_token", "held_keys"})
    data["payload_writes"] = run.payload_writes
    return data


# ------------------------------------------------------------------
# Orphans
# ------------------------------------------------------------------


def format_orphan_report(report: OrphanReport) -> str:
    """Format orphan candidates grouped by kind."""
    if report.total == 0:
        return f"No orphaned entities for session {report.session_id}."

    lines = [
        f"{report.total} orphaned entities (not seen in session "
        f"{report.session_id}):",
        "",
    ]
    for kind in sorted(report.by_kind):
        items = report.by_kind[kind]
        lines.append(f"{kind} ({len(items)}):")
        for candidate in items[:MAX_LISTED_ORPHANS]:
            lines.append(
                f"  {candidate.external_id} -> local {candidate.local_id}: "
                f"{candidate.display_name}"
            )
        hidden = len(items) - MAX_LISTED_ORPHANS
        if hidden > 0:
            lines.append(f"  ... and {hidden} more")
        lines.append("")
    return "\n".join(lines).rstrip()


def orphans_to_json(report: OrphanReport) -> dict[str, Any]:
    return {
        "session_id": report.session_id,
        "total": report.total,
        "counts": report.counts(),
        "items": {
            kind: [
                {
                    "external_id": c.external_id,
                    "local_id": c.local_id,
                    "name": c.display_name,
                }
                for c in items
            ]
            for kind, items in report.by_kind.items()
        },
    }


def format_deletion_result(result: DeletionResult) -> str:
    lines = [f"Deleted {result.deleted} orphaned entities."]
    if result.errors:
        lines.append(f"{len(result.errors)} could not be deleted:")
        lines.extend(f"  {message}" for message in result.errors)
    return "\n".join(lines)
