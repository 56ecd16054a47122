"""One-way catalog sync engine.

Mirrors a remote catalog of categories, procedures and cases into a
local store, keeping a registry that maps every remote identity to its
local entity.

Architecture
------------
A run is **mark-and-sweep**.  Every record pulled from upstream is
fingerprinted and compared with the fingerprint stored in its registry
entry; only new or changed records are written.  Every registry entry the
run touches, changed or not, is stamped with the run's session id.  Once
all stages have succeeded, entries of the tenant not stamped by the
session are orphans: their entities no longer exist upstream and are
removed.

Runs of one tenant are serialised by a TTL lock, so a crashed process
never blocks the next run for longer than the TTL.

Modules:

- ``fingerprint``  -- canonical encoding and SHA-256 content fingerprint.
- ``mapper``       -- ``EntityMapper``: remote payload to ``EntityDraft``.
- ``detector``     -- ``ChangeDetector``: create / update / unchanged.
- ``lock``         -- ``SyncLock`` with memory and file backends.
- ``context``      -- ``RunContext``: per-run counters and progress.
- ``orchestrator`` -- ``SyncOrchestrator``: stage state machine.
- ``reconciler``   -- ``OrphanReconciler``: the sweep.
- ``service``      -- ``SyncService``: the entry-point facade.
- ``models``       -- data contracts.
- ``reporter``     -- human-readable and JSON output.

Usage example
-------------
::

    from catalog_mirror.core import StaticSource
    from catalog_mirror.storage import InMemoryAuditLog, InMemoryMirror
    from catalog_mirror.sync import SyncService, format_run_report

    service = SyncService(
        {"tenant-token": StaticSource(categories, procedures, cases)},
        InMemoryMirror(),
        InMemoryAuditLog(),
    )

    run = service.run("tenant-token")
    print(format_run_report(run))
"""

from .detector import ChangeDetector
from .fingerprint import canonical_encode, fingerprint
from .lock import FileLockBackend, LockToken, MemoryLockBackend, SyncLock
from .mapper import EntityMapper
from .models import (
    Classification,
    DeletionResult,
    EntityDraft,
    OrphanCandidate,
    OrphanReport,
    ProgressSnapshot,
    RecordKind,
    RegistryEntry,
    RemoteRecord,
    RunHandle,
    RunSnapshot,
    RunStage,
    RunStatus,
    SyncAction,
    SyncRun,
    Trigger,
)
from .orchestrator import SyncOrchestrator
from .reconciler import OrphanReconciler
from .reporter import (
    format_orphan_report,
    format_progress,
    format_run_report,
    run_to_json,
)
from .service import SyncService

__all__ = [
    "ChangeDetector",
    "Classification",
    "DeletionResult",
    "EntityDraft",
    "EntityMapper",
    "FileLockBackend",
    "LockToken",
    "MemoryLockBackend",
    "OrphanCandidate",
    "OrphanReconciler",
    "OrphanReport",
    "ProgressSnapshot",
    "RecordKind",
    "RegistryEntry",
    "RemoteRecord",
    "RunHandle",
    "RunSnapshot",
    "RunStage",
    "RunStatus",
    "SyncAction",
    "SyncLock",
    "SyncOrchestrator",
    "SyncRun",
    "SyncService",
    "Trigger",
    "canonical_encode",
    "fingerprint",
    "format_orphan_report",
    "format_progress",
    "format_run_report",
    "run_to_json",
]
