"""Mark-and-sweep orphan reconciliation.

During a run every registry entry the orchestrator touches is stamped
with the run's session id (the *mark*).  After all stages have finished,
the reconciler sweeps:

1. **Find** -- registry entries of the tenant whose session stamp differs
   from the current session, optionally filtered by kind and minus any
   protected keys.
2. **Enrich** -- each candidate gets its local display name; a failed
   lookup degrades to a placeholder.
3. **Delete** -- the mirror entity and its registry entry go together in
   one store commit.  A candidate that cannot be removed is reported and
   keeps both its entity and its entry for a later run.  Each successful
   deletion appends one audit record with kind, external id, local id and
   session id only.
4. **Report** -- candidates grouped by kind for operator review.

Entries of other tenants are never read or touched.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Collection, Iterable
from typing import TYPE_CHECKING

from catalog_mirror.errors import (
    CatalogMirrorError,
    ReconciliationError,
)
from catalog_mirror.sync.models import (
    DeletionResult,
    OrphanCandidate,
    OrphanReport,
    RecordKind,
    RegistryEntry,
)

if TYPE_CHECKING:
    from catalog_mirror.ports import AuditLog, Mirror

logger = logging.getLogger(__name__)

UNKNOWN_NAME = "(name unavailable)"


class OrphanReconciler:
    """Sweep registry entries left behind by a sync session.

    Args:
        mirror: Entity store and registry.
        audit_log: Receives one record per deleted orphan.
    """

    def __init__(self, mirror: Mirror, audit_log: AuditLog) -> None:
        self.mirror = mirror
        self.audit_log = audit_log

    # ------------------------------------------------------------------
    # Find / enrich
    # ------------------------------------------------------------------

    def find_candidates(
        self,
        session_id: str,
        tenant_token: str,
        kind: RecordKind | None = None,
        protected: Collection[tuple[str, str]] = (),
    ) -> list[RegistryEntry]:
        """Registry entries of *tenant_token* not stamped by *session_id*.

        Args:
            session_id: The session whose mark phase has completed.
            tenant_token: Only this tenant's entries are considered.
            kind: Restrict the sweep to one kind.
            protected: ``(kind, external_id)`` pairs never returned, such
                as records seen this run that failed to persist.
        """
        entries = self.mirror.find_stale_entries(session_id, tenant_token, kind)
        return [
            e
            for e in entries
            if e.tenant_token == tenant_token
            and e.last_sync_session_id != session_id
            and (e.kind.value, e.external_id) not in protected
        ]

    def enrich(self, entries: Iterable[RegistryEntry]) -> list[OrphanCandidate]:
        """Attach display names for operator review."""
        candidates: list[OrphanCandidate] = []
        for entry in entries:
            try:
                name = self.mirror.get_display_name(entry.local_id) or UNKNOWN_NAME
            except Exception as exc:
                logger.debug(
                    "Name lookup failed for %s %s: %s",
                    entry.kind.value,
                    entry.external_id,
                    exc,
                )
                name = UNKNOWN_NAME
            candidates.append(OrphanCandidate(entry=entry, display_name=name))
        return candidates

    def list_orphans(
        self,
        session_id: str,
        tenant_token: str,
        kind: RecordKind | None = None,
        protected: Collection[tuple[str, str]] = (),
    ) -> list[OrphanCandidate]:
        return self.enrich(
            self.find_candidates(session_id, tenant_token, kind, protected)
        )

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete(
        self, candidates: Iterable[OrphanCandidate], session_id: str
    ) -> DeletionResult:
        """Delete each candidate's entity and registry entry.

        Candidates re-stamped by any session since they were listed are
        skipped.  Failures are collected, never raised.
        """
        removed: list[OrphanCandidate] = []
        kept: list[OrphanCandidate] = []
        errors: list[str] = []

        for candidate in candidates:
            try:
                if self._delete_one(candidate, session_id):
                    removed.append(candidate)
            except (CatalogMirrorError, OSError) as exc:
                message = (
                    f"{candidate.kind.value} {candidate.external_id} "
                    f"(local {candidate.local_id}): {exc}"
                )
                logger.error("Orphan deletion failed: %s", message)
                errors.append(message)
                kept.append(candidate)

        return DeletionResult(
            deleted=len(removed), errors=errors, removed=removed, kept=kept
        )

    def _delete_one(self, candidate: OrphanCandidate, session_id: str) -> bool:
        entry = candidate.entry
        current = self.mirror.get_registry_entry(
            entry.tenant_token, entry.kind, entry.external_id
        )
        if current is None:
            logger.debug(
                "Orphan %s %s already removed",
                entry.kind.value,
                entry.external_id,
            )
            return False
        if current.last_sync_session_id != entry.last_sync_session_id:
            logger.info(
                "Skipping %s %s: re-stamped by session %s",
                entry.kind.value,
                entry.external_id,
                current.last_sync_session_id,
            )
            return False
        if current.local_id != entry.local_id:
            raise ReconciliationError(
                f"registry now points at local {current.local_id}"
            )

        if not self.mirror.delete_pair(
            entry.tenant_token, entry.kind, entry.external_id, entry.local_id
        ):
            logger.warning(
                "Entity %s for %s %s was already missing",
                entry.local_id,
                entry.kind.value,
                entry.external_id,
            )

        self.audit_log.record_deletion(
            entry.kind, entry.external_id, entry.local_id, session_id
        )
        return True

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    def report(
        self, candidates: Iterable[OrphanCandidate], session_id: str
    ) -> OrphanReport:
        """Group *candidates* by kind."""
        grouped: dict[str, list[OrphanCandidate]] = defaultdict(list)
        total = 0
        for candidate in candidates:
            grouped[candidate.kind.value].append(candidate)
            total += 1
        return OrphanReport(
            session_id=session_id, total=total, by_kind=dict(grouped)
        )
