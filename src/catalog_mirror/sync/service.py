"""Entry-point facade over the sync engine.

``SyncService`` exposes the operations every entry point (MCP tools,
schedulers, tests) invokes:

- ``start_run`` / ``cancel_run`` / ``get_run_status`` / ``get_progress``
- ``list_orphans`` / ``delete_orphans``
- ``sync_case``, ``run`` (blocking)
- ``stats`` / ``recent_runs`` / ``cleanup_old_runs``

``start_run`` takes the tenant's lock synchronously, so contention is
reported to the caller as ``AlreadyRunning`` before any run exists, and
then executes the run on a background thread.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Any

from catalog_mirror.config_schema import SyncConfig
from catalog_mirror.errors import AlreadyLocked, AlreadyRunning
from catalog_mirror.sync.context import RunContext
from catalog_mirror.sync.lock import SyncLock
from catalog_mirror.sync.models import (
    DeletionResult,
    OrphanCandidate,
    OrphanReport,
    ProgressSnapshot,
    RecordKind,
    RegistryEntry,
    RunHandle,
    RunSnapshot,
    RunStage,
    RunStatus,
    SyncRun,
    Trigger,
    mask_token,
)
from catalog_mirror.sync.orchestrator import SyncOrchestrator, utcnow

if TYPE_CHECKING:
    from catalog_mirror.ports import AuditLog, Mirror, Source

logger = logging.getLogger(__name__)

# Runs examined when looking for a session in the run log
RUN_SCAN_LIMIT = 1000


class SyncService:
    """Run and inspect catalog syncs for one or more tenants.

    Args:
        sources: Remote catalog per tenant token.
        mirror: Entity store and registry.
        audit_log: Sync run log and deletion trail.
        lock: Per-tenant single-writer lock.
        settings: Sync behaviour.
        clock: Returns the current UTC time.
        sleep: Delay function used between case pages.
    """

    def __init__(
        self,
        sources: Mapping[str, Source],
        mirror: Mirror,
        audit_log: AuditLog,
        lock: SyncLock | None = None,
        settings: SyncConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.sources = dict(sources)
        self.mirror = mirror
        self.audit_log = audit_log
        self.lock = lock or SyncLock()
        self.settings = settings or SyncConfig()
        kwargs: dict[str, Any] = {"clock": clock}
        if sleep is not None:
            kwargs["sleep"] = sleep
        self.orchestrator = SyncOrchestrator(
            mirror, audit_log, self.lock, self.settings, **kwargs
        )
        self._guard = threading.Lock()
        self._active: dict[str, RunContext] = {}
        self._threads: dict[str, threading.Thread] = {}

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def start_run(
        self, tenant_token: str, trigger: Trigger = Trigger.MANUAL
    ) -> RunHandle:
        """Start a full sync on a background thread.

        Raises:
            AlreadyRunning: If the tenant's lock is held.
            ValueError: If no source is configured for *tenant_token*.
        """
        source = self._source(tenant_token)
        ctx = self.orchestrator.begin(tenant_token, trigger)
        thread = threading.Thread(
            target=self._execute,
            args=(ctx, source),
            name=f"catalog-sync-{ctx.session_id}",
            daemon=True,
        )
        with self._guard:
            self._active[ctx.session_id] = ctx
            self._threads[ctx.session_id] = thread
        thread.start()
        return RunHandle(session_id=ctx.session_id, tenant_token=tenant_token)

    def run(
        self, tenant_token: str, trigger: Trigger = Trigger.MANUAL
    ) -> SyncRun:
        """Run a full sync on the calling thread and return its log."""
        source = self._source(tenant_token)
        ctx = self.orchestrator.begin(tenant_token, trigger)
        with self._guard:
            self._active[ctx.session_id] = ctx
        return self._execute(ctx, source)

    def sync_case(
        self,
        tenant_token: str,
        case_id: str,
        trigger: Trigger = Trigger.MANUAL,
    ) -> SyncRun:
        """Sync one case on the calling thread.  Never sweeps."""
        source = self._source(tenant_token)
        ctx = self.orchestrator.begin(tenant_token, trigger, single_record=True)
        with self._guard:
            self._active[ctx.session_id] = ctx
        return self._execute(ctx, source, case_id=str(case_id))

    def wait(self, handle: RunHandle, timeout: float | None = None) -> RunSnapshot:
        """Block until the run behind *handle* finishes (or *timeout*)."""
        with self._guard:
            thread = self._threads.get(handle.session_id)
        if thread is not None:
            thread.join(timeout)
        return self.get_run_status(handle)

    def cancel_run(self, handle: RunHandle) -> bool:
        """Ask an active run to stop at the next record or page boundary.

        Returns:
            ``True`` if the run was active and has been signalled.
        """
        with self._guard:
            ctx = self._active.get(handle.session_id)
        if ctx is None:
            return False
        logger.info("Cancellation requested for %s", handle.session_id)
        ctx.cancel_event.set()
        return True

    def get_run_status(self, handle: RunHandle) -> RunSnapshot:
        """Current status of the run behind *handle*.

        Raises:
            ValueError: If the session is unknown.
        """
        with self._guard:
            ctx = self._active.get(handle.session_id)
        if ctx is not None and ctx.result is not None:
            return _snapshot_from_run(ctx.result)
        if ctx is not None:
            progress = ctx.progress
            return RunSnapshot(
                session_id=ctx.session_id,
                tenant_token=ctx.tenant_token,
                status=RunStatus.STARTED,
                stage=progress.stage if progress else ctx.stage,
                percent=progress.percent if progress else 0,
                items_processed=progress.items_processed if progress else 0,
                items_failed=progress.items_failed if progress else 0,
                error_summary=list(progress.errors) if progress else [],
                started_at=ctx.started_at,
            )

        run = self.audit_log.get_run(handle.session_id)
        if run is None:
            raise ValueError(f"Unknown sync session: {handle.session_id}")
        return _snapshot_from_run(run)

    def get_progress(
        self, tenant_token: str | None = None
    ) -> ProgressSnapshot | None:
        """Progress of the active run (for *tenant_token*), or ``None``."""
        with self._guard:
            contexts = list(self._active.values())
        for ctx in contexts:
            if tenant_token is None or ctx.tenant_token == tenant_token:
                return ctx.progress
        return None

    def _execute(
        self, ctx: RunContext, source: Source, case_id: str | None = None
    ) -> SyncRun:
        try:
            return self.orchestrator.execute(ctx, source, case_id=case_id)
        finally:
            with self._guard:
                self._active.pop(ctx.session_id, None)
                self._threads.pop(ctx.session_id, None)

    def default_tenant(self) -> str:
        """The only configured tenant.

        Raises:
            ValueError: If zero or several tenants are configured.
        """
        if len(self.sources) != 1:
            raise ValueError(
                f"Expected exactly one configured tenant, found {len(self.sources)}"
            )
        return next(iter(self.sources))

    def source_for(self, tenant_token: str) -> Source:
        return self._source(tenant_token)

    def _source(self, tenant_token: str) -> Source:
        source = self.sources.get(tenant_token)
        if source is None:
            raise ValueError(
                f"No catalog source configured for tenant {mask_token(tenant_token)}"
            )
        return source

    # ------------------------------------------------------------------
    # Orphans
    # ------------------------------------------------------------------

    def list_orphans(
        self,
        session_id: str,
        tenant_token: str,
        kind: RecordKind | None = None,
    ) -> list[OrphanCandidate]:
        """Entities of *tenant_token* that full run *session_id* did not see.

        Entries the run held back (seen but failed, or of a kind pulled
        incompletely) are left out, as are entries stamped by any run that
        started after it.

        Raises:
            ValueError: If the session is unknown, belongs to another
                tenant, or did not finish a full pass with a sweep.
        """
        run = self.audit_log.get_run(session_id)
        if run is None or run.tenant_token != tenant_token:
            raise ValueError(f"Unknown sync session: {session_id}")
        if not run.sweepable:
            raise ValueError(
                f"Sync run {session_id} did not finish a full sync; "
                "orphans can only be judged against one."
            )
        later = self._later_sessions(run)
        skipped = set(run.incomplete_kinds)
        return [
            c
            for c in self.orchestrator.reconciler.list_orphans(
                session_id, tenant_token, kind, protected=set(run.held_keys)
            )
            if c.kind not in skipped
            and c.entry.last_sync_session_id not in later
            and not _synced_after(c.entry, run.started_at)
        ]

    def orphan_report(
        self,
        session_id: str,
        tenant_token: str,
        kind: RecordKind | None = None,
    ) -> OrphanReport:
        return self.orchestrator.reconciler.report(
            self.list_orphans(session_id, tenant_token, kind), session_id
        )

    def delete_orphans(
        self, candidates: Iterable[OrphanCandidate], session_id: str
    ) -> DeletionResult:
        """Delete operator-confirmed orphans under each tenant's lock.

        Raises:
            AlreadyRunning: If a sync run holds one of the tenants' locks.
        """
        by_tenant: dict[str, list[OrphanCandidate]] = {}
        for candidate in candidates:
            by_tenant.setdefault(candidate.entry.tenant_token, []).append(
                candidate
            )

        deleted = 0
        errors: list[str] = []
        removed: list[OrphanCandidate] = []
        kept: list[OrphanCandidate] = []
        for tenant_token, group in by_tenant.items():
            try:
                with self.lock.held(tenant_token, self.settings.lock_ttl):
                    result = self.orchestrator.reconciler.delete(group, session_id)
            except AlreadyLocked as exc:
                raise AlreadyRunning(exc.tenant_label, exc.held_since) from exc
            deleted += result.deleted
            errors.extend(result.errors)
            removed.extend(result.removed)
            kept.extend(result.kept)
        return DeletionResult(
            deleted=deleted, errors=errors, removed=removed, kept=kept
        )

    def last_session_id(self, tenant_token: str) -> str | None:
        """Session of the tenant's latest full run that reached the sweep."""
        for run in self.audit_log.recent_runs(
            limit=RUN_SCAN_LIMIT, tenant_token=tenant_token
        ):
            if run.sweepable:
                return run.session_id
        return None

    def _later_sessions(self, run: SyncRun) -> set[str]:
        later: set[str] = set()
        for other in self.audit_log.recent_runs(
            limit=RUN_SCAN_LIMIT, tenant_token=run.tenant_token
        ):
            if other.session_id == run.session_id:
                break
            later.add(other.session_id)
        return later

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def recent_runs(
        self, limit: int = 10, tenant_token: str | None = None
    ) -> list[SyncRun]:
        return self.audit_log.recent_runs(limit, tenant_token)

    def stats(self, tenant_token: str | None = None) -> dict[str, Any]:
        """Run log statistics plus registry counts by kind."""
        stats = dict(self.audit_log.stats(tenant_token))
        registry = self.mirror.registry_stats(tenant_token)
        stats["registry"] = registry
        stats["total_mapped_cases"] = registry.get(RecordKind.CASE.value, 0)
        return stats

    def cleanup_old_runs(self, days_to_keep: int | None = None) -> int:
        days = (
            days_to_keep
            if days_to_keep is not None
            else self.settings.log_retention_days
        )
        return self.audit_log.cleanup(days)


def _snapshot_from_run(run: SyncRun) -> RunSnapshot:
    if run.status == RunStatus.FAILED:
        stage = RunStage.FAILED
    elif run.status == RunStatus.STARTED:
        stage = RunStage.LOCKED
    else:
        stage = RunStage.COMPLETED
    return RunSnapshot(
        session_id=run.session_id,
        tenant_token=run.tenant_token,
        status=run.status,
        stage=stage,
        percent=0 if run.status == RunStatus.STARTED else 100,
        items_processed=run.items_processed,
        items_failed=run.items_failed,
        error_summary=list(run.error_summary),
        started_at=run.started_at,
        ended_at=run.ended_at,
    )


def _synced_after(entry: RegistryEntry, started_at: str) -> bool:
    if not entry.last_synced_at:
        return False
    return datetime.fromisoformat(entry.last_synced_at) > datetime.fromisoformat(
        started_at
    )
