"""Per-run mutable state.

A ``RunContext`` is created when a run acquires its lock and is discarded
when the run ends.  Only the thread executing the run mutates it; other
threads read ``progress``, which is replaced wholesale by ``publish()``.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from catalog_mirror.errors import RunCancelled
from catalog_mirror.sync.models import (
    MediaItem,
    ProgressSnapshot,
    RecordKind,
    RunStage,
    RunStatus,
    SyncRun,
    Trigger,
)

if TYPE_CHECKING:
    from catalog_mirror.sync.lock import LockToken

MAX_ERROR_MESSAGES = 10
MAX_MESSAGE_LENGTH = 500
RECENT_ITEMS = 10

# Share of the progress bar covered by each stage: (start, end)
STAGE_SPAN: dict[RunStage, tuple[int, int]] = {
    RunStage.LOCKED: (0, 0),
    RunStage.TAXONOMIES: (0, 10),
    RunStage.PROCEDURES: (10, 20),
    RunStage.CASES: (20, 90),
    RunStage.MEDIA: (90, 95),
    RunStage.SWEEPING: (95, 100),
    RunStage.COMPLETED: (100, 100),
    RunStage.FAILED: (100, 100),
}


def truncate_messages(messages: list[str]) -> list[str]:
    """First ``MAX_ERROR_MESSAGES`` messages, each capped in length."""
    kept = [m[:MAX_MESSAGE_LENGTH] for m in messages[:MAX_ERROR_MESSAGES]]
    extra = len(messages) - MAX_ERROR_MESSAGES
    if extra > 0:
        kept.append(f"... and {extra} more")
    return kept


@dataclass
class RunContext:
    session_id: str
    tenant_token: str
    trigger: Trigger
    started_at: str
    lock_token: LockToken | None = None
    single_record: bool = False

    stage: RunStage = RunStage.LOCKED
    stage_fraction: float = 0.0

    processed: int = 0
    failed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    pulled: int = 0
    orphans_deleted: int = 0

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    failed_stage: str | None = None

    # Keys observed this run, including records that failed to persist
    seen: set[tuple[str, str]] = field(default_factory=set)
    # Kinds whose pull was incomplete; the sweep skips them
    incomplete_kinds: set[RecordKind] = field(default_factory=set)
    # Stale keys the sweep left alone because they were seen this run
    held_keys: set[tuple[str, str]] = field(default_factory=set)
    swept: bool = False
    procedure_parents: dict[str, list[str]] = field(default_factory=dict)
    # (local_id, photos) for cases written this run
    pending_media: list[tuple[str, list[MediaItem]]] = field(default_factory=list)

    recent: deque = field(default_factory=lambda: deque(maxlen=RECENT_ITEMS))
    cancel_event: threading.Event = field(default_factory=threading.Event)
    progress: ProgressSnapshot | None = None
    result: SyncRun | None = None

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def check_cancelled(self) -> None:
        """Raise ``RunCancelled`` if a stop was requested."""
        if self.cancel_event.is_set():
            raise RunCancelled("cancelled")

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def mark_seen(self, kind: RecordKind, external_id: str) -> None:
        self.seen.add((kind.value, external_id))

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def note(self, item: str) -> None:
        self.recent.append(item)

    def enter(self, stage: RunStage) -> None:
        self.stage = stage
        self.stage_fraction = 0.0
        self.publish()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def percent(self) -> int:
        start, end = STAGE_SPAN[self.stage]
        fraction = min(max(self.stage_fraction, 0.0), 1.0)
        return int(start + (end - start) * fraction)

    def publish(self) -> ProgressSnapshot:
        """Replace the published progress snapshot."""
        snapshot = ProgressSnapshot(
            session_id=self.session_id,
            stage=self.stage,
            percent=self.percent,
            items_processed=self.processed,
            items_failed=self.failed,
            recent_items=list(self.recent),
            errors=truncate_messages(self.errors),
            warnings=truncate_messages(self.warnings),
        )
        self.progress = snapshot
        return snapshot

    def to_run(self, status: RunStatus, ended_at: str | None = None) -> SyncRun:
        return SyncRun(
            session_id=self.session_id,
            tenant_token=self.tenant_token,
            trigger=self.trigger,
            status=status,
            started_at=self.started_at,
            ended_at=ended_at,
            items_processed=self.processed,
            items_failed=self.failed,
            created=self.created,
            updated=self.updated,
            unchanged=self.unchanged,
            orphans_deleted=self.orphans_deleted,
            error_summary=truncate_messages(self.errors),
            warnings=truncate_messages(self.warnings),
            failed_stage=self.failed_stage,
            full_run=not self.single_record,
            swept=self.swept,
            incomplete_kinds=sorted(self.incomplete_kinds, key=lambda k: k.value),
            held_keys=sorted(self.held_keys),
        )
