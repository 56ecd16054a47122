"""Staged sync pipeline for one tenant.

The ``SyncOrchestrator`` drives a run through its stages:

1. **Lock** -- ``begin()`` takes the tenant's lock and logs the run as
   ``started``; contention surfaces as ``AlreadyRunning``.
2. **Taxonomies** -- categories, parents before children.
3. **Procedures** -- linked to their categories.
4. **Cases** -- pulled page by page (``batch_size``), with ``page_delay``
   between pages, linked to procedures and their categories.
5. **Media** -- optional; photos of cases written in this run.
6. **Sweep** -- orphan reconciliation for the run's session.

Each record is classified, then mapped and written only when it changed,
and finally stamped with the session id.  Per-record failures are counted
and the run continues (status degrades to ``partial``); run-level failures
end the run as ``failed``.  The lock is released on every exit path.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from catalog_mirror.config_schema import SyncConfig
from catalog_mirror.errors import (
    AlreadyLocked,
    AlreadyRunning,
    CatalogMirrorError,
    LockStale,
    MappingError,
    PersistError,
    RunCancelled,
    SourceUnavailable,
)
from catalog_mirror.sync.context import RunContext
from catalog_mirror.sync.detector import ChangeDetector
from catalog_mirror.sync.lock import SyncLock
from catalog_mirror.sync.mapper import EntityMapper, validate_external_id
from catalog_mirror.sync.models import (
    RecordKind,
    RegistryEntry,
    RemoteRecord,
    RunStage,
    RunStatus,
    SyncAction,
    SyncRun,
    Trigger,
    mask_token,
)
from catalog_mirror.sync.reconciler import OrphanReconciler

if TYPE_CHECKING:
    from catalog_mirror.ports import AuditLog, Mirror, Source

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    """Unique marker for one sync run."""
    return f"sync_{uuid.uuid4().hex[:16]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parents_first(records: list[RemoteRecord]) -> list[RemoteRecord]:
    """Order records so every parent precedes its children.

    Source order is kept otherwise.  Records whose parent is not in the
    list (or that sit on a parent cycle) keep their relative order at the
    end.
    """
    by_id = {r.external_id: r for r in records if r.external_id}
    ordered: list[RemoteRecord] = []
    placed: set[int] = set()
    remaining = list(records)
    while remaining:
        progressed = False
        still: list[RemoteRecord] = []
        for record in remaining:
            parent = record.parent_external_id
            parent_record = by_id.get(parent) if parent else None
            if (
                parent_record is None
                or parent_record is record
                or id(parent_record) in placed
            ):
                ordered.append(record)
                placed.add(id(record))
                progressed = True
            else:
                still.append(record)
        if not progressed:
            ordered.extend(still)
            break
        remaining = still
    return ordered


class SyncOrchestrator:
    """Run the staged catalog sync against one mirror.

    Args:
        mirror: Entity store and registry.
        audit_log: Sync run log and deletion trail.
        lock: Per-tenant single-writer lock.
        settings: Sync behaviour (batch size, delays, TTL, flags).
        clock: Returns the current UTC time.
        sleep: Called with ``page_delay`` between case pages.
    """

    def __init__(
        self,
        mirror: Mirror,
        audit_log: AuditLog,
        lock: SyncLock,
        settings: SyncConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.mirror = mirror
        self.audit_log = audit_log
        self.lock = lock
        self.settings = settings or SyncConfig()
        self.reconciler = OrphanReconciler(mirror, audit_log)
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def begin(
        self,
        tenant_token: str,
        trigger: Trigger = Trigger.MANUAL,
        single_record: bool = False,
    ) -> RunContext:
        """Acquire the tenant's lock and open a run log entry.

        Raises:
            AlreadyRunning: If another run holds the tenant's lock.
        """
        try:
            token = self.lock.acquire(tenant_token, self.settings.lock_ttl)
        except AlreadyLocked as exc:
            raise AlreadyRunning(exc.tenant_label, exc.held_since) from exc

        ctx = RunContext(
            session_id=new_session_id(),
            tenant_token=tenant_token,
            trigger=trigger,
            started_at=self._now(),
            lock_token=token,
            single_record=single_record,
        )
        try:
            self.audit_log.record(ctx.to_run(RunStatus.STARTED))
        except BaseException:
            self.lock.release(token)
            raise
        ctx.publish()
        logger.info(
            "Sync run %s started for %s (%s)",
            ctx.session_id,
            mask_token(tenant_token),
            trigger.value,
        )
        return ctx

    def execute(
        self,
        ctx: RunContext,
        source: Source,
        case_id: str | None = None,
    ) -> SyncRun:
        """Run all stages for *ctx*, finalize the log and release the lock.

        Args:
            ctx: Context returned by ``begin()``.
            source: Remote catalog to pull from.
            case_id: When given, sync only this case (no sweep).

        Returns:
            The finalized ``SyncRun``.
        """
        status = RunStatus.FAILED
        try:
            if case_id is None:
                self._run_stages(ctx, source)
            else:
                self._run_single_case(ctx, source, case_id)
            if ctx.failed_stage is None:
                status = RunStatus.PARTIAL if ctx.errors else RunStatus.COMPLETED
        except RunCancelled:
            logger.warning(
                "Sync run %s cancelled during %s", ctx.session_id, ctx.stage.value
            )
            ctx.failed_stage = ctx.stage.value
            ctx.add_error("cancelled")
        except (SourceUnavailable, LockStale) as exc:
            logger.error(
                "Sync run %s failed during %s: %s",
                ctx.session_id,
                ctx.stage.value,
                exc,
            )
            ctx.failed_stage = ctx.stage.value
            ctx.add_error(f"{ctx.stage.value}: {exc}")
        except Exception as exc:
            logger.exception(
                "Unexpected error in sync run %s during %s",
                ctx.session_id,
                ctx.stage.value,
            )
            ctx.failed_stage = ctx.stage.value
            ctx.add_error(f"{ctx.stage.value}: unexpected error: {exc}")
        finally:
            run = self._finalize(ctx, status)
        return run

    def run(
        self,
        source: Source,
        tenant_token: str,
        trigger: Trigger = Trigger.MANUAL,
    ) -> SyncRun:
        """Blocking full run: ``begin()`` then ``execute()``."""
        return self.execute(self.begin(tenant_token, trigger), source)

    def _finalize(self, ctx: RunContext, status: RunStatus) -> SyncRun:
        ctx.enter(
            RunStage.COMPLETED if status != RunStatus.FAILED else RunStage.FAILED
        )
        run = ctx.to_run(status, ended_at=self._now())
        try:
            self.audit_log.record(run)
        except Exception:
            logger.exception("Could not write sync log for %s", ctx.session_id)
        finally:
            if ctx.lock_token is not None:
                self.lock.release(ctx.lock_token)
        ctx.result = run
        logger.info(
            "Sync run %s finished: %s (%d processed, %d failed, "
            "%d created, %d updated, %d unchanged, %d orphans deleted)",
            run.session_id,
            run.status.value,
            run.items_processed,
            run.items_failed,
            run.created,
            run.updated,
            run.unchanged,
            run.orphans_deleted,
        )
        return run

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _run_stages(self, ctx: RunContext, source: Source) -> None:
        detector, mapper = self._collaborators(ctx)

        ctx.enter(RunStage.TAXONOMIES)
        categories = parents_first(source.fetch_categories())
        self._process_list(ctx, categories, detector, mapper)

        ctx.enter(RunStage.PROCEDURES)
        procedures = source.fetch_procedures()
        ctx.procedure_parents.update(procedure_parents(procedures))
        self._process_list(ctx, procedures, detector, mapper)

        ctx.enter(RunStage.CASES)
        self._sync_cases(ctx, source, detector, mapper)

        self._attach_media(ctx)
        self._sweep(ctx)

    def _run_single_case(
        self, ctx: RunContext, source: Source, case_id: str
    ) -> None:
        detector, mapper = self._collaborators(ctx)

        ctx.enter(RunStage.CASES)
        try:
            case_id = validate_external_id(case_id, RecordKind.CASE)
        except MappingError as exc:
            ctx.failed_stage = RunStage.CASES.value
            ctx.add_error(str(exc))
            return
        ctx.procedure_parents.update(procedure_parents(source.fetch_procedures()))
        record = source.fetch_case(case_id)
        if record is None:
            ctx.failed_stage = RunStage.CASES.value
            ctx.add_error(f"case {case_id} not found upstream")
            return
        ctx.pulled += 1
        self._process_record(ctx, record, detector, mapper)
        ctx.stage_fraction = 1.0
        ctx.publish()
        self._attach_media(ctx)

    def _collaborators(
        self, ctx: RunContext
    ) -> tuple[ChangeDetector, EntityMapper]:
        tenant = ctx.tenant_token
        detector = ChangeDetector(
            tenant,
            self.mirror.get_registry_entry,
            force_update_all=self.settings.force_update_all,
            force_update_ids=self.settings.force_update_ids,
        )
        mapper = EntityMapper(
            tenant,
            term_lookup=lambda kind, ext: self.mirror.lookup_term(
                tenant, kind, ext
            ),
            procedure_parents=ctx.procedure_parents,
        )
        return detector, mapper

    def _process_list(
        self,
        ctx: RunContext,
        records: list[RemoteRecord],
        detector: ChangeDetector,
        mapper: EntityMapper,
    ) -> None:
        ctx.pulled += len(records)
        batch = self.settings.batch_size
        for index, record in enumerate(records):
            if index and index % batch == 0:
                self._refresh_lock(ctx)
            ctx.check_cancelled()
            self._process_record(ctx, record, detector, mapper)
            ctx.stage_fraction = (index + 1) / len(records)
            ctx.publish()

    def _sync_cases(
        self,
        ctx: RunContext,
        source: Source,
        detector: ChangeDetector,
        mapper: EntityMapper,
    ) -> None:
        batch = self.settings.batch_size
        total = source.total_cases()
        pages = math.ceil(total / batch) if total > 0 else 0
        logger.info(
            "Syncing %d cases in %d pages of %d", total, pages, batch
        )

        for page in range(1, pages + 1):
            ctx.check_cancelled()
            if page > 1 and self.settings.page_delay > 0:
                self._sleep(self.settings.page_delay)
            self._refresh_lock(ctx)

            records = source.fetch_cases_page(page, batch)
            if not records:
                ctx.incomplete_kinds.add(RecordKind.CASE)
                ctx.add_warning(f"case page {page} of {pages} was empty")
                logger.warning("Case page %d of %d was empty", page, pages)
                continue

            ctx.pulled += len(records)
            for record in records:
                ctx.check_cancelled()
                self._process_record(ctx, record, detector, mapper)
            ctx.stage_fraction = page / pages
            ctx.publish()

    def _attach_media(self, ctx: RunContext) -> None:
        if not self.settings.import_media or not ctx.pending_media:
            return
        ctx.enter(RunStage.MEDIA)
        total = len(ctx.pending_media)
        for index, (local_id, media) in enumerate(ctx.pending_media):
            ctx.check_cancelled()
            try:
                self.mirror.attach_media(local_id, media)
            except (CatalogMirrorError, OSError) as exc:
                logger.warning("Media attach failed for %s: %s", local_id, exc)
                ctx.add_warning(f"media for entity {local_id}: {exc}")
            ctx.stage_fraction = (index + 1) / total
            ctx.publish()

    def _sweep(self, ctx: RunContext) -> None:
        ctx.enter(RunStage.SWEEPING)
        ctx.swept = True
        stale = self.reconciler.find_candidates(ctx.session_id, ctx.tenant_token)
        ctx.held_keys = {
            (e.kind.value, e.external_id)
            for e in stale
            if (e.kind.value, e.external_id) in ctx.seen
        }
        candidates = self.reconciler.enrich(
            e
            for e in stale
            if (e.kind.value, e.external_id) not in ctx.held_keys
            and e.kind not in ctx.incomplete_kinds
        )
        if not candidates:
            return

        if not self.settings.auto_delete_orphans:
            ctx.add_warning(
                f"{len(candidates)} orphaned entities awaiting review"
            )
            return

        result = self.reconciler.delete(candidates, ctx.session_id)
        ctx.orphans_deleted = result.deleted
        for message in result.errors:
            ctx.add_error(f"orphan cleanup: {message}")
        ctx.stage_fraction = 1.0
        ctx.publish()

    # ------------------------------------------------------------------
    # Per-record work
    # ------------------------------------------------------------------

    def _process_record(
        self,
        ctx: RunContext,
        record: RemoteRecord,
        detector: ChangeDetector,
        mapper: EntityMapper,
    ) -> None:
        kind = record.kind.value
        try:
            external_id = validate_external_id(record.external_id, record.kind)
            ctx.mark_seen(record.kind, external_id)
            decision = detector.classify(record)

            if decision.action == SyncAction.UNCHANGED:
                self._stamp(
                    ctx, record.kind, external_id, decision.local_id,
                    decision.fingerprint,
                )
                ctx.unchanged += 1
            else:
                if decision.action == SyncAction.CREATE:
                    draft = mapper.to_create(record)
                else:
                    draft = mapper.to_update(record, decision.local_id)
                if draft.missing_links:
                    ctx.add_warning(
                        f"{kind} {external_id}: unresolved links "
                        + ", ".join(draft.missing_links)
                    )

                local_id = self.mirror.upsert_entity(draft, decision.local_id)
                # No fingerprint until every link resolves, so the next
                # run rewrites the entity.
                stamped = None if draft.missing_links else decision.fingerprint
                try:
                    self._stamp(ctx, record.kind, external_id, local_id, stamped)
                except PersistError:
                    if decision.action == SyncAction.CREATE:
                        self._rollback_create(ctx, local_id, kind, external_id)
                    raise

                if decision.action == SyncAction.CREATE:
                    ctx.created += 1
                else:
                    ctx.updated += 1
                if draft.media:
                    ctx.pending_media.append((local_id, draft.media))

            ctx.processed += 1
            ctx.note(f"{decision.action.value} {kind} {external_id}")
            logger.debug(
                "%s %s %s", decision.action.value, kind, external_id
            )

        except MappingError as exc:
            ctx.failed += 1
            label = exc.external_id or record.external_id or "?"
            logger.warning("Skipping %s %s: %s", kind, label, exc)
            ctx.add_error(f"{kind} {label}: {exc}")
        except PersistError as exc:
            ctx.failed += 1
            logger.error(
                "Error syncing %s %s: %s", kind, record.external_id, exc
            )
            ctx.add_error(f"{kind} {record.external_id}: {exc}")

    def _stamp(
        self,
        ctx: RunContext,
        kind: RecordKind,
        external_id: str,
        local_id: str | None,
        fingerprint: str | None,
    ) -> None:
        """Write the registry entry, retrying before giving up.

        Raises:
            PersistError: If every attempt failed.
        """
        if local_id is None:
            raise PersistError(f"no local id to stamp for {external_id}")
        entry = RegistryEntry(
            tenant_token=ctx.tenant_token,
            kind=kind,
            external_id=external_id,
            local_id=local_id,
            content_fingerprint=fingerprint,
            last_synced_at=self._now(),
            last_sync_session_id=ctx.session_id,
        )
        attempts = self.settings.stamp_attempts
        last_error: PersistError | None = None
        for attempt in range(1, attempts + 1):
            try:
                self.mirror.stamp_registry_entry(entry)
                return
            except PersistError as exc:
                last_error = exc
                logger.warning(
                    "Registry stamp %d/%d failed for %s %s: %s",
                    attempt,
                    attempts,
                    kind.value,
                    external_id,
                    exc,
                )
        raise PersistError(
            f"registry stamp failed after {attempts} attempts: {last_error}"
        ) from last_error

    def _rollback_create(
        self, ctx: RunContext, local_id: str, kind: str, external_id: str
    ) -> None:
        try:
            self.mirror.delete_entity(local_id)
        except (CatalogMirrorError, OSError) as exc:
            logger.error(
                "Could not roll back unregistered %s %s (local %s): %s",
                kind,
                external_id,
                local_id,
                exc,
            )
            ctx.add_warning(
                f"{kind} {external_id}: unregistered entity {local_id} left behind"
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _refresh_lock(self, ctx: RunContext) -> None:
        if ctx.lock_token is not None:
            ctx.lock_token = self.lock.refresh(ctx.lock_token)

    def _now(self) -> str:
        return self._clock().isoformat()


def procedure_parents(records: list[RemoteRecord]) -> dict[str, list[str]]:
    """Map procedure external ids to the external ids of their categories."""
    parents: dict[str, list[str]] = {}
    for record in records:
        if not record.external_id:
            continue
        ids: list[str] = []
        if record.parent_external_id:
            ids.append(record.parent_external_id)
        for cid in record.payload.get("categoryIds") or []:
            text = str(cid)
            if text not in ids:
                ids.append(text)
        parents[str(record.external_id)] = ids
    return parents
