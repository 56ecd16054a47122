"""Pydantic models for the catalog sync engine.

Defines the data contracts shared by all sync modules:

- ``RecordKind``: the three kinds of remote records.
- ``RemoteRecord``: a record pulled from the remote catalog.
- ``EntityDraft`` / ``MediaItem``: what the mapper hands to the mirror.
- ``RegistryEntry``: the remote-to-local identity row with sync bookkeeping.
- ``SyncRun``: the persisted log of one run.
- ``Classification``: the change detector's decision for one record.
- ``ProgressSnapshot`` / ``RunSnapshot``: pollable views of a run.
- ``OrphanCandidate`` / ``DeletionResult`` / ``OrphanReport`` /
  ``DeletionRecord``: sweep results and their audit trail.

All models are frozen (immutable).  Progress is published by replacing the
whole snapshot, never by mutating one.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RecordKind(str, Enum):
    """Kinds of remote catalog records, in stage order."""

    CATEGORY = "category"
    PROCEDURE = "procedure"
    CASE = "case"


class RunStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class Trigger(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class RunStage(str, Enum):
    """Orchestrator state machine positions."""

    LOCKED = "locked"
    TAXONOMIES = "taxonomies"
    PROCEDURES = "procedures"
    CASES = "cases"
    MEDIA = "media"
    SWEEPING = "sweeping"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncAction(str, Enum):
    """Change detector outcomes."""

    CREATE = "create"
    UPDATE = "update"
    UNCHANGED = "unchanged"


def mask_token(token: str) -> str:
    """Return a log-safe label for a tenant token."""
    if len(token) <= 4:
        return "****"
    return f"{token[:4]}****"


# ---------------------------------------------------------------------------
# Records and drafts
# ---------------------------------------------------------------------------


class RemoteRecord(BaseModel):
    """A record pulled from the remote catalog.

    Attributes:
        external_id: Stable identifier assigned by the remote catalog.
            ``None`` when the remote payload carried no id.
        kind: Record kind.
        parent_external_id: External id of the parent record, if any
            (parent category for categories and procedures).
        payload: The raw remote fields.
    """

    external_id: str | None = None
    kind: RecordKind
    parent_external_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class MediaItem(BaseModel):
    """One before/after photo attached to a case."""

    role: str
    url: str
    alt: str = ""
    caption: str = ""
    title: str = ""
    description: str = ""
    width: int | None = None
    height: int | None = None
    file_size: int | None = None

    model_config = {"frozen": True}


class EntityDraft(BaseModel):
    """Create/update representation of one mirror entity.

    Attributes:
        tenant_token: Tenant the entity belongs to.
        kind: Entity kind.
        external_id: Remote identifier.
        local_id: Existing local id for updates, ``None`` for creates.
        title: Display title.
        slug: URL slug.
        excerpt: Short summary text.
        status: Publication status (``publish``, ``draft``, ``private``).
        parent_local_id: Local id of the parent term, if any.
        term_links: Linked term local ids keyed by kind value.
        fields: Kind-specific structured fields.
        media: Photos to attach in the media stage.
        missing_links: External ids of referenced terms not yet mirrored.
        fingerprint: Content fingerprint of the source record.
    """

    tenant_token: str
    kind: RecordKind
    external_id: str
    local_id: str | None = None
    title: str
    slug: str
    excerpt: str = ""
    status: str = "publish"
    parent_local_id: str | None = None
    term_links: dict[str, list[str]] = Field(default_factory=dict)
    fields: dict[str, Any] = Field(default_factory=dict)
    media: list[MediaItem] = Field(default_factory=list)
    missing_links: list[str] = Field(default_factory=list)
    fingerprint: str

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Registry and run log
# ---------------------------------------------------------------------------


class RegistryEntry(BaseModel):
    """Join row between remote identity and local identity.

    Exactly one entry exists per ``(tenant_token, kind, external_id)``.
    """

    tenant_token: str
    kind: RecordKind
    external_id: str
    local_id: str
    content_fingerprint: str | None = None
    last_synced_at: str | None = None
    last_sync_session_id: str | None = None

    model_config = {"frozen": True}

    @property
    def key(self) -> tuple[str, RecordKind, str]:
        return (self.tenant_token, self.kind, self.external_id)


class SyncRun(BaseModel):
    """Persisted log of one sync run.

    Attributes:
        session_id: Unique marker for this run, stamped on every registry
            entry the run touches.
        tenant_token: Tenant being synced.
        trigger: What started the run.
        status: Current or final status.
        started_at: ISO 8601 timestamp of lock acquisition.
        ended_at: ISO 8601 timestamp of finalization.
        items_processed: Records handled successfully (including unchanged).
        items_failed: Records that failed mapping or persistence.
        created: Entities created.
        updated: Entities rewritten.
        unchanged: Entities only re-stamped.
        orphans_deleted: Entities removed by the sweep.
        error_summary: Truncated list of error messages.
        warnings: Truncated list of non-fatal warnings.
        failed_stage: Stage in which a run-level failure happened.
        full_run: Whether the run pulled the whole catalog (single-case
            runs do not).
        swept: Whether the run reached the sweep stage.
        incomplete_kinds: Kinds whose pull was incomplete; their stale
            entries are not orphans of this run.
        held_keys: ``(kind, external_id)`` pairs seen upstream this run
            that failed to persist; never orphans of this run.
    """

    session_id: str
    tenant_token: str
    trigger: Trigger = Trigger.MANUAL
    status: RunStatus = RunStatus.STARTED
    started_at: str
    ended_at: str | None = None
    items_processed: int = 0
    items_failed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    orphans_deleted: int = 0
    error_summary: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    failed_stage: str | None = None
    full_run: bool = False
    swept: bool = False
    incomplete_kinds: list[RecordKind] = Field(default_factory=list)
    held_keys: list[tuple[str, str]] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def finished(self) -> bool:
        return self.status != RunStatus.STARTED

    @property
    def sweepable(self) -> bool:
        """Whether orphans can be judged against this run."""
        return (
            self.full_run
            and self.swept
            and self.status in (RunStatus.COMPLETED, RunStatus.PARTIAL)
        )

    @property
    def payload_writes(self) -> int:
        """Entities whose payload was written during this run."""
        return self.created + self.updated

    def summary(self) -> str:
        """Format a one-paragraph human-readable summary of the run."""
        lines = [
            f"Sync run {self.session_id} ({self.trigger.value}): "
            f"{self.status.value}",
            f"  Processed: {self.items_processed}",
            f"  Failed:    {self.items_failed}",
            f"  Created:   {self.created}",
            f"  Updated:   {self.updated}",
            f"  Unchanged: {self.unchanged}",
            f"  Orphans deleted: {self.orphans_deleted}",
        ]
        return "\n".join(lines)


class Classification(BaseModel):
    """Change detector decision for one record."""

    action: SyncAction
    local_id: str | None = None
    fingerprint: str

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Pollable views
# ---------------------------------------------------------------------------


class ProgressSnapshot(BaseModel):
    """Point-in-time progress of the active run."""

    session_id: str
    stage: RunStage
    percent: int = Field(default=0, ge=0, le=100)
    items_processed: int = 0
    items_failed: int = 0
    recent_items: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class RunSnapshot(BaseModel):
    """Status of a run as seen by a caller holding its handle."""

    session_id: str
    tenant_token: str
    status: RunStatus
    stage: RunStage
    percent: int = 0
    items_processed: int = 0
    items_failed: int = 0
    error_summary: list[str] = Field(default_factory=list)
    started_at: str | None = None
    ended_at: str | None = None

    model_config = {"frozen": True}

    @property
    def done(self) -> bool:
        return self.status != RunStatus.STARTED


class RunHandle(BaseModel):
    """Opaque reference returned by ``start_run``."""

    session_id: str
    tenant_token: str

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Orphan sweep
# ---------------------------------------------------------------------------


class OrphanCandidate(BaseModel):
    """A registry entry not stamped by the session being swept."""

    entry: RegistryEntry
    display_name: str

    model_config = {"frozen": True}

    @property
    def kind(self) -> RecordKind:
        return self.entry.kind

    @property
    def external_id(self) -> str:
        return self.entry.external_id

    @property
    def local_id(self) -> str:
        return self.entry.local_id


class DeletionResult(BaseModel):
    """Outcome of deleting a batch of orphan candidates."""

    deleted: int = 0
    errors: list[str] = Field(default_factory=list)
    removed: list[OrphanCandidate] = Field(default_factory=list)
    kept: list[OrphanCandidate] = Field(default_factory=list)

    model_config = {"frozen": True}


class OrphanReport(BaseModel):
    """Orphan candidates grouped by kind for operator review."""

    session_id: str
    total: int = 0
    by_kind: dict[str, list[OrphanCandidate]] = Field(default_factory=dict)

    model_config = {"frozen": True}

    def counts(self) -> dict[str, int]:
        return {kind: len(items) for kind, items in self.by_kind.items()}


class DeletionRecord(BaseModel):
    """Audit row for one orphan deletion.  Carries no business payload."""

    kind: RecordKind
    external_id: str
    local_id: str
    session_id: str
    deleted_at: str

    model_config = {"frozen": True}
