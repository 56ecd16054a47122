"""Dict-backed mirror and audit log.

``InMemoryMirror`` keeps entities and registry entries in dicts guarded by
one re-entrant lock.  Every mutating method runs inside ``_mutation()``,
which calls ``_commit()`` once the change is applied and puts the previous
state back if the change or the commit raises.  ``_commit()`` is a no-op
here that ``JsonFileMirror`` overrides to persist.  The same pattern is
used by ``InMemoryAuditLog``.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from catalog_mirror.errors import PersistError
from catalog_mirror.sync.models import (
    DeletionRecord,
    EntityDraft,
    MediaItem,
    RecordKind,
    RegistryEntry,
    RunStatus,
    SyncRun,
)

logger = logging.getLogger(__name__)

RegistryKey = tuple[str, str, str]

TERM_KINDS = (RecordKind.CATEGORY, RecordKind.PROCEDURE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _registry_key(
    tenant_token: str, kind: RecordKind | str, external_id: str
) -> RegistryKey:
    return (tenant_token, RecordKind(kind).value, str(external_id))


class InMemoryMirror:
    """Mirror held entirely in process memory.

    Attributes:
        payload_writes: Number of entity create/update writes performed,
            used to verify that unchanged records are not rewritten.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entities: dict[str, dict[str, Any]] = {}
        self._registry: dict[RegistryKey, RegistryEntry] = {}
        self._next_id = 1
        self.payload_writes = 0

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def upsert_entity(
        self, draft: EntityDraft, existing_id: str | None = None
    ) -> str:
        """Create an entity, or replace entity *existing_id* with *draft*.

        Raises:
            PersistError: If *existing_id* does not exist or belongs to a
                different kind, or the write cannot be committed.
        """
        with self._mutation():
            if existing_id is not None:
                current = self._entities.get(existing_id)
                if current is None:
                    raise PersistError(
                        f"Entity {existing_id} does not exist"
                    )
                if current["kind"] != draft.kind.value:
                    raise PersistError(
                        f"Entity {existing_id} is a {current['kind']}, "
                        f"not a {draft.kind.value}"
                    )
                local_id = existing_id
                media = current.get("media", [])
            else:
                local_id = str(self._next_id)
                self._next_id += 1
                media = []

            data = draft.model_dump(mode="json", exclude={"media"})
            data["local_id"] = local_id
            data["media"] = media
            self._entities[local_id] = data
            self.payload_writes += 1
        return local_id

    def delete_entity(self, local_id: str) -> bool:
        """Delete an entity and drop references to it from other entities."""
        with self._lock:
            if local_id not in self._entities:
                return False
            with self._mutation():
                self._drop_entity(local_id)
            return True

    def delete_pair(
        self,
        tenant_token: str,
        kind: RecordKind,
        external_id: str,
        local_id: str,
    ) -> bool:
        """Delete an entity together with its registry entry in one commit.

        Returns:
            ``False`` if the entity was already missing; the registry entry
            is removed either way.

        Raises:
            PersistError: If the registry entry is gone or points at another
                entity, or the commit fails.  Nothing is removed then.
        """
        key = _registry_key(tenant_token, kind, external_id)
        with self._mutation():
            entry = self._registry.get(key)
            if entry is None or entry.local_id != local_id:
                raise PersistError(
                    f"Registry entry for {RecordKind(kind).value} "
                    f"{external_id} does not point at {local_id}"
                )
            existed = local_id in self._entities
            if existed:
                self._drop_entity(local_id)
            del self._registry[key]
        return existed

    def _drop_entity(self, local_id: str) -> None:
        del self._entities[local_id]
        for other in self._entities.values():
            touched = False
            if other.get("parent_local_id") == local_id:
                other["parent_local_id"] = None
                touched = True
            for kind, ids in other.get("term_links", {}).items():
                if local_id in ids:
                    other["term_links"][kind] = [
                        i for i in ids if i != local_id
                    ]
                    touched = True
            if touched:
                self._forget_fingerprint(other)

    def _forget_fingerprint(self, entity: dict[str, Any]) -> None:
        # A cut link makes the stored payload stale: force a rewrite.
        key = _registry_key(
            entity["tenant_token"], entity["kind"], entity["external_id"]
        )
        entry = self._registry.get(key)
        if entry is not None and entry.local_id == entity["local_id"]:
            self._registry[key] = entry.model_copy(
                update={"content_fingerprint": None}
            )

    def entity_exists(self, local_id: str) -> bool:
        with self._lock:
            return local_id in self._entities

    def get_entity(self, local_id: str) -> dict[str, Any] | None:
        with self._lock:
            entity = self._entities.get(local_id)
            return copy.deepcopy(entity) if entity is not None else None

    def list_entities(
        self,
        kind: RecordKind | None = None,
        tenant_token: str | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(e)
                for e in self._entities.values()
                if (kind is None or e["kind"] == RecordKind(kind).value)
                and (tenant_token is None or e["tenant_token"] == tenant_token)
            ]

    def get_display_name(self, local_id: str) -> str:
        """Return the entity title.

        Raises:
            PersistError: If the entity does not exist.
        """
        with self._lock:
            entity = self._entities.get(local_id)
            if entity is None:
                raise PersistError(f"Entity {local_id} does not exist")
            return str(entity.get("title") or "")

    def attach_media(self, local_id: str, media: list[MediaItem]) -> int:
        """Replace the photos attached to a case entity."""
        with self._mutation():
            entity = self._entities.get(local_id)
            if entity is None:
                raise PersistError(f"Entity {local_id} does not exist")
            entity["media"] = [m.model_dump(mode="json") for m in media]
        return len(media)

    def lookup_by_external_id(
        self, tenant_token: str, kind: RecordKind, external_id: str
    ) -> str | None:
        entry = self.get_registry_entry(tenant_token, kind, external_id)
        return entry.local_id if entry is not None else None

    def lookup_term(
        self, tenant_token: str, kind: RecordKind, external_id: str
    ) -> str | None:
        if RecordKind(kind) not in TERM_KINDS:
            return None
        local_id = self.lookup_by_external_id(tenant_token, kind, external_id)
        if local_id is None or not self.entity_exists(local_id):
            return None
        return local_id

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def get_registry_entry(
        self, tenant_token: str, kind: RecordKind, external_id: str
    ) -> RegistryEntry | None:
        with self._lock:
            return self._registry.get(
                _registry_key(tenant_token, kind, external_id)
            )

    def stamp_registry_entry(self, entry: RegistryEntry) -> None:
        """Insert or replace the registry entry for ``entry.key``."""
        with self._mutation():
            self._registry[
                _registry_key(entry.tenant_token, entry.kind, entry.external_id)
            ] = entry

    def find_stale_entries(
        self,
        session_id: str,
        tenant_token: str,
        kind: RecordKind | None = None,
    ) -> list[RegistryEntry]:
        """Entries of *tenant_token* not stamped by *session_id*."""
        with self._lock:
            return [
                entry
                for entry in self._registry.values()
                if entry.tenant_token == tenant_token
                and entry.last_sync_session_id != session_id
                and (kind is None or entry.kind == RecordKind(kind))
            ]

    def registry_entries(
        self, tenant_token: str | None = None
    ) -> list[RegistryEntry]:
        with self._lock:
            return [
                e
                for e in self._registry.values()
                if tenant_token is None or e.tenant_token == tenant_token
            ]

    def registry_stats(self, tenant_token: str | None = None) -> dict[str, int]:
        """Registry entry counts by kind."""
        counts = {kind.value: 0 for kind in RecordKind}
        for entry in self.registry_entries(tenant_token):
            counts[entry.kind.value] += 1
        return counts

    # ------------------------------------------------------------------
    # Persistence hook
    # ------------------------------------------------------------------

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """Apply a change and commit it, or restore the previous state."""
        with self._lock:
            saved = (
                copy.deepcopy(self._entities),
                dict(self._registry),
                self._next_id,
                self.payload_writes,
            )
            try:
                yield
                self._commit()
            except BaseException:
                (
                    self._entities,
                    self._registry,
                    self._next_id,
                    self.payload_writes,
                ) = saved
                raise

    def _commit(self) -> None:
        """Persist state after a mutation (no-op in memory)."""


class InMemoryAuditLog:
    """Run log and deletion trail held in process memory.

    Args:
        clock: Returns the current UTC time; used for deletion timestamps
            and retention cleanup.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._lock = threading.RLock()
        self._clock = clock
        self._runs: dict[str, SyncRun] = {}
        self.deletions: list[DeletionRecord] = []

    def record(self, run: SyncRun) -> None:
        with self._mutation():
            self._runs[run.session_id] = run

    def record_deletion(
        self,
        kind: RecordKind,
        external_id: str,
        local_id: str,
        session_id: str,
    ) -> DeletionRecord:
        entry = DeletionRecord(
            kind=kind,
            external_id=external_id,
            local_id=local_id,
            session_id=session_id,
            deleted_at=self._clock().isoformat(),
        )
        with self._mutation():
            self.deletions.append(entry)
        logger.info(
            "Deleted orphan %s %s (local %s) in session %s",
            kind.value,
            external_id,
            local_id,
            session_id,
        )
        return entry

    def get_run(self, session_id: str) -> SyncRun | None:
        with self._lock:
            return self._runs.get(session_id)

    def recent_runs(
        self, limit: int = 10, tenant_token: str | None = None
    ) -> list[SyncRun]:
        """Most recent runs first.

        Runs with equal start times are ordered by when they were first
        logged.
        """
        with self._lock:
            runs = [
                (r.started_at, order, r)
                for order, r in enumerate(self._runs.values())
                if tenant_token is None or r.tenant_token == tenant_token
            ]
        runs.sort(key=lambda item: item[:2], reverse=True)
        return [r for _, _, r in runs[: max(0, limit)]]

    def stats(self, tenant_token: str | None = None) -> dict[str, Any]:
        """Aggregate counts over the retained run log."""
        runs = self.recent_runs(limit=len(self._runs), tenant_token=tenant_token)
        successful = sum(1 for r in runs if r.status == RunStatus.COMPLETED)
        failed = sum(1 for r in runs if r.status == RunStatus.FAILED)
        partial = sum(1 for r in runs if r.status == RunStatus.PARTIAL)
        last = runs[0] if runs else None
        return {
            "total_syncs": len(runs),
            "successful_syncs": successful,
            "partial_syncs": partial,
            "failed_syncs": failed,
            "last_sync": last.started_at if last else None,
            "last_status": last.status.value if last else None,
        }

    def cleanup(self, days_to_keep: int = 30) -> int:
        """Drop finished runs older than *days_to_keep* (clamped to 1..365).

        Returns:
            Number of runs removed.
        """
        days = max(1, min(365, int(days_to_keep)))
        cutoff = self._clock() - timedelta(days=days)
        with self._lock:
            expired = [
                session_id
                for session_id, run in self._runs.items()
                if run.finished
                and datetime.fromisoformat(run.started_at) < cutoff
            ]
            if expired:
                with self._mutation():
                    for session_id in expired:
                        del self._runs[session_id]
        logger.info("Removed %d sync log rows older than %d days", len(expired), days)
        return len(expired)

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """Apply a change and commit it, or restore the previous state."""
        with self._lock:
            saved = (dict(self._runs), list(self.deletions))
            try:
                yield
                self._commit()
            except BaseException:
                self._runs, self.deletions = saved
                raise

    def _commit(self) -> None:
        """Persist state after a mutation (no-op in memory)."""
