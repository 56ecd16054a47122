"""Error taxonomy for catalog synchronization.

Per-record errors (``MappingError``, ``PersistError``) are recovered by the
orchestrator: the record is counted as failed and the run continues.
Run-level errors (``SourceUnavailable``, ``RunCancelled``, ``LockStale``)
end the current run as ``failed``.  ``AlreadyRunning`` is raised to the
caller before any run is created.
"""

from __future__ import annotations


class CatalogMirrorError(Exception):
    """Base class for all catalog_mirror errors."""


class MappingError(CatalogMirrorError):
    """A remote record is missing mandatory fields or is malformed."""

    def __init__(
        self,
        message: str,
        kind: str | None = None,
        external_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.external_id = external_id


class PersistError(CatalogMirrorError):
    """A write to the mirror or its registry failed."""


class SourceUnavailable(CatalogMirrorError):
    """The remote catalog could not be reached or refused the request."""


class AlreadyRunning(CatalogMirrorError):
    """A sync run already holds the lock for this tenant."""

    def __init__(self, tenant_label: str, held_since: float | None = None):
        super().__init__(
            f"A sync run is already in progress for tenant {tenant_label}"
        )
        self.tenant_label = tenant_label
        self.held_since = held_since


class AlreadyLocked(CatalogMirrorError):
    """Lock acquisition lost against a live holder."""

    def __init__(self, tenant_label: str, held_since: float | None = None):
        super().__init__(f"Sync lock for tenant {tenant_label} is held")
        self.tenant_label = tenant_label
        self.held_since = held_since


class LockStale(CatalogMirrorError):
    """The caller's lock token is no longer the current holder."""


class ReconciliationError(CatalogMirrorError):
    """Deleting an orphaned entity or its registry entry failed."""


class RunCancelled(CatalogMirrorError):
    """The cooperative stop signal was observed during a run."""
