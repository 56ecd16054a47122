"""Tests for SyncService, the entry-point facade.

Covers:
- Background runs: start, wait, status, progress
- Concurrent start for the same tenant raises AlreadyRunning
- Cooperative cancellation
- Orphan listing and operator-confirmed deletion under the lock
- Orphans are judged only against full runs that reached the sweep
- sync_case, stats, history, cleanup, last_session_id
- Tenant resolution
"""

from __future__ import annotations

import threading

import pytest

from catalog_mirror.config_schema import SyncConfig
from catalog_mirror.core.static_source import StaticSource, case, category, procedure
from catalog_mirror.errors import AlreadyRunning, PersistError
from catalog_mirror.storage import InMemoryMirror
from catalog_mirror.sync.models import RecordKind, RunHandle, RunStatus
from catalog_mirror.sync.service import SyncService

TENANT = "tenant-a-token"


class RejectingMirror(InMemoryMirror):
    """Mirror that refuses case writes once `reject_cases` is set."""

    reject_cases = False

    def upsert_entity(self, draft, existing_id=None):
        if self.reject_cases and draft.kind == RecordKind.CASE:
            raise PersistError("disk full")
        return super().upsert_entity(draft, existing_id)


def _gated_source(gate):
    return StaticSource(
        categories=[category("1", "Breast")],
        procedures=[procedure("10", "Augmentation", parent="1")],
        cases=[case("100", ["10"])],
        gate=gate,
    )


class TestBackgroundRuns:
    def test_start_and_wait(self, make_service, sample_source):
        service = make_service({TENANT: sample_source})
        handle = service.start_run(TENANT)
        assert handle.session_id.startswith("sync_")

        snapshot = service.wait(handle, timeout=5)

        assert snapshot.done
        assert snapshot.status == RunStatus.COMPLETED
        assert snapshot.items_processed == 3
        assert snapshot.percent == 100

    def test_finished_thread_is_forgotten(self, make_service, sample_source):
        service = make_service({TENANT: sample_source})
        handle = service.start_run(TENANT)
        service.wait(handle, timeout=5)

        assert service._threads == {}
        assert service.get_run_status(handle).status == RunStatus.COMPLETED

    def test_concurrent_start_rejected(self, make_service):
        gate = threading.Event()
        service = make_service({TENANT: _gated_source(gate)})
        handle = service.start_run(TENANT)
        try:
            with pytest.raises(AlreadyRunning):
                service.start_run(TENANT)
            assert service.get_run_status(handle).status == RunStatus.STARTED
            progress = service.get_progress(TENANT)
            assert progress is not None
            assert progress.session_id == handle.session_id
        finally:
            gate.set()
        assert service.wait(handle, timeout=5).status == RunStatus.COMPLETED
        assert service.get_progress() is None

    def test_other_tenant_runs_concurrently(self, make_service, sample_source):
        gate = threading.Event()
        service = make_service(
            {TENANT: _gated_source(gate), "tenant-b": sample_source}
        )
        first = service.start_run(TENANT)
        try:
            run = service.run("tenant-b")
            assert run.status == RunStatus.COMPLETED
        finally:
            gate.set()
        service.wait(first, timeout=5)

    def test_cancel(self, make_service):
        gate = threading.Event()
        service = make_service({TENANT: _gated_source(gate)})
        handle = service.start_run(TENANT)

        assert service.cancel_run(handle) is True
        gate.set()
        snapshot = service.wait(handle, timeout=5)

        assert snapshot.status == RunStatus.FAILED
        assert snapshot.error_summary == ["cancelled"]
        assert service.cancel_run(handle) is False

    def test_unknown_session(self, make_service, sample_source):
        service = make_service({TENANT: sample_source})
        with pytest.raises(ValueError, match="Unknown sync session"):
            service.get_run_status(RunHandle(session_id="sync_x", tenant_token=TENANT))

    def test_unknown_tenant(self, make_service, sample_source):
        service = make_service({TENANT: sample_source})
        with pytest.raises(ValueError, match="No catalog source"):
            service.start_run("nobody")


class TestOrphans:
    def _stale_setup(self, make_service, clock):
        source = StaticSource(
            categories=[category("1", "Breast")],
            cases=[case("100"), case("101", title="Gone")],
        )
        service = make_service({TENANT: source}, auto_delete_orphans=False)
        service.run(TENANT)
        clock.advance(minutes=5)
        source.cases = [case("100")]
        run = service.run(TENANT)
        return service, run

    def _full_then_single(self, make_service, clock, minutes):
        source = StaticSource(
            categories=[category("1", "Breast")],
            procedures=[procedure("10", "Augmentation", parent="1")],
            cases=[case("100", ["10"]), case("101", ["10"])],
        )
        service = make_service({TENANT: source}, auto_delete_orphans=False)
        full = service.run(TENANT)
        clock.advance(minutes=minutes)
        single = service.sync_case(TENANT, "100")
        return service, full, single

    def test_list_and_report(self, make_service, clock):
        service, run = self._stale_setup(make_service, clock)

        orphans = service.list_orphans(run.session_id, TENANT)
        assert [(o.kind, o.external_id, o.display_name) for o in orphans] == [
            (RecordKind.CASE, "101", "Gone")
        ]
        report = service.orphan_report(run.session_id, TENANT)
        assert report.counts() == {"case": 1}

    def test_delete_confirmed(self, make_service, mirror, audit_log, clock):
        service, run = self._stale_setup(make_service, clock)
        orphans = service.list_orphans(run.session_id, TENANT)

        result = service.delete_orphans(orphans, run.session_id)

        assert result.deleted == 1
        assert mirror.get_registry_entry(TENANT, RecordKind.CASE, "101") is None
        assert len(audit_log.deletions) == 1

    def test_delete_refused_while_running(self, make_service, clock):
        service, run = self._stale_setup(make_service, clock)
        orphans = service.list_orphans(run.session_id, TENANT)
        service.lock.acquire(TENANT, 60)

        with pytest.raises(AlreadyRunning):
            service.delete_orphans(orphans, run.session_id)

    def test_last_session_id_skips_failed_runs(self, make_service, clock):
        service, run = self._stale_setup(make_service, clock)
        clock.advance(minutes=5)
        service.sources[TENANT].fail_on = {"fetch_categories"}
        assert service.run(TENANT).status == RunStatus.FAILED

        assert service.last_session_id(TENANT) == run.session_id
        assert service.last_session_id("tenant-b") is None

    @pytest.mark.parametrize("minutes", [0, 5])
    def test_single_case_run_is_never_the_sweep_session(
        self, make_service, clock, minutes
    ):
        service, full, single = self._full_then_single(make_service, clock, minutes)

        assert (single.full_run, single.swept) == (False, False)
        assert service.last_session_id(TENANT) == full.session_id
        with pytest.raises(ValueError, match="did not finish a full sync"):
            service.list_orphans(single.session_id, TENANT)

    @pytest.mark.parametrize("minutes", [0, 5])
    def test_entries_restamped_after_the_run_are_kept(
        self, make_service, mirror, clock, minutes
    ):
        service, full, _ = self._full_then_single(make_service, clock, minutes)

        orphans = service.list_orphans(service.last_session_id(TENANT), TENANT)
        result = service.delete_orphans(orphans, full.session_id)

        assert orphans == []
        assert result.deleted == 0
        assert mirror.registry_stats(TENANT) == {
            "category": 1,
            "procedure": 1,
            "case": 2,
        }

    def test_incomplete_kind_not_listed(self, make_service, clock):
        source = StaticSource(
            categories=[category("1", "Breast")],
            cases=[case("100"), case("101")],
        )
        service = make_service(
            {TENANT: source}, auto_delete_orphans=False, batch_size=1
        )
        service.run(TENANT)
        clock.advance(minutes=5)
        source.empty_pages = {2}
        run = service.run(TENANT)

        assert run.incomplete_kinds == [RecordKind.CASE]
        assert service.list_orphans(run.session_id, TENANT) == []

    def test_held_keys_not_listed(self, audit_log, clock):
        mirror = RejectingMirror()
        source = StaticSource(cases=[case("100"), case("101")])
        service = SyncService(
            {TENANT: source},
            mirror,
            audit_log,
            settings=SyncConfig(page_delay=0, auto_delete_orphans=False),
            clock=clock,
            sleep=lambda _: None,
        )
        service.run(TENANT)
        clock.advance(minutes=5)
        source.cases = [case("100", details="changed")]
        mirror.reject_cases = True
        run = service.run(TENANT)

        assert run.held_keys == [("case", "100")]
        orphans = service.list_orphans(run.session_id, TENANT)
        assert [o.external_id for o in orphans] == ["101"]

    def test_unknown_session_rejected(self, make_service, sample_source):
        service = make_service({TENANT: sample_source})
        with pytest.raises(ValueError, match="Unknown sync session"):
            service.list_orphans("sync_nope", TENANT)


class TestSingleCase:
    def test_sync_case(self, make_service, sample_source, mirror):
        service = make_service({TENANT: sample_source})
        run = service.sync_case(TENANT, 100)
        assert run.status == RunStatus.COMPLETED
        assert run.created == 1
        assert mirror.lookup_by_external_id(TENANT, RecordKind.CASE, "100")

    def test_sync_case_not_found(self, make_service, sample_source):
        service = make_service({TENANT: sample_source})
        run = service.sync_case(TENANT, "999")
        assert run.status == RunStatus.FAILED


class TestHistory:
    def test_stats(self, make_service, sample_source):
        service = make_service({TENANT: sample_source})
        service.run(TENANT)

        stats = service.stats(TENANT)

        assert stats["total_syncs"] == 1
        assert stats["successful_syncs"] == 1
        assert stats["last_status"] == "completed"
        assert stats["registry"] == {"category": 1, "procedure": 1, "case": 1}
        assert stats["total_mapped_cases"] == 1

    def test_recent_runs_newest_first(self, make_service, sample_source, clock):
        service = make_service({TENANT: sample_source})
        first = service.run(TENANT)
        clock.advance(minutes=1)
        second = service.run(TENANT)

        runs = service.recent_runs(limit=5)
        assert [r.session_id for r in runs] == [second.session_id, first.session_id]
        assert len(service.recent_runs(limit=1)) == 1

    def test_cleanup_old_runs(self, make_service, sample_source, clock):
        service = make_service({TENANT: sample_source})
        service.run(TENANT)
        clock.advance(days=40)
        service.run(TENANT)

        assert service.cleanup_old_runs() == 1
        assert len(service.recent_runs()) == 1


class TestTenantResolution:
    def test_default_tenant(self, make_service, sample_source):
        service = make_service({TENANT: sample_source})
        assert service.default_tenant() == TENANT
        assert service.source_for(TENANT) is sample_source

    def test_default_tenant_ambiguous(self, make_service, sample_source):
        service = make_service({TENANT: sample_source, "b": sample_source})
        with pytest.raises(ValueError, match="exactly one"):
            service.default_tenant()
