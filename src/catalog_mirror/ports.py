"""Capabilities the sync engine consumes.

The engine depends only on these protocols:

- ``Source`` -- the remote catalog (``CatalogClient`` in production,
  ``StaticSource`` in tests).
- ``Mirror`` -- the local entity store together with its registry
  (``InMemoryMirror``, ``JsonFileMirror``).
- ``AuditLog`` -- run log and deletion audit trail
  (``InMemoryAuditLog``, ``JsonFileAuditLog``).
"""

from __future__ import annotations

from typing import Any, Protocol

from catalog_mirror.sync.models import (
    DeletionRecord,
    EntityDraft,
    MediaItem,
    RecordKind,
    RegistryEntry,
    RemoteRecord,
    SyncRun,
)


class Source(Protocol):
    """Read access to the remote catalog.

    Every method raises ``SourceUnavailable`` on transport or auth failure.
    """

    def fetch_categories(self) -> list[RemoteRecord]: ...

    def fetch_procedures(self) -> list[RemoteRecord]: ...

    def fetch_cases_page(self, page: int, size: int) -> list[RemoteRecord]:
        """Return page *page* (1-based) of at most *size* cases."""
        ...

    def total_cases(self) -> int: ...

    def fetch_case(self, external_id: str) -> RemoteRecord | None: ...


class Mirror(Protocol):
    """Local entity store plus its registry.

    Write methods raise ``PersistError`` when the store rejects a write.
    """

    # Entities

    def upsert_entity(
        self, draft: EntityDraft, existing_id: str | None = None
    ) -> str: ...

    def delete_entity(self, local_id: str) -> bool: ...

    def delete_pair(
        self,
        tenant_token: str,
        kind: RecordKind,
        external_id: str,
        local_id: str,
    ) -> bool:
        """Delete an entity and its registry entry as one write.

        Returns ``False`` if the entity was already missing.  On failure
        neither is removed.
        """
        ...

    def entity_exists(self, local_id: str) -> bool: ...

    def get_entity(self, local_id: str) -> dict[str, Any] | None: ...

    def get_display_name(self, local_id: str) -> str: ...

    def attach_media(self, local_id: str, media: list[MediaItem]) -> int: ...

    def lookup_by_external_id(
        self, tenant_token: str, kind: RecordKind, external_id: str
    ) -> str | None: ...

    def lookup_term(
        self, tenant_token: str, kind: RecordKind, external_id: str
    ) -> str | None: ...

    # Registry

    def get_registry_entry(
        self, tenant_token: str, kind: RecordKind, external_id: str
    ) -> RegistryEntry | None: ...

    def stamp_registry_entry(self, entry: RegistryEntry) -> None: ...

    def find_stale_entries(
        self,
        session_id: str,
        tenant_token: str,
        kind: RecordKind | None = None,
    ) -> list[RegistryEntry]: ...

    def registry_stats(
        self, tenant_token: str | None = None
    ) -> dict[str, int]: ...


class AuditLog(Protocol):
    """Run log and deletion audit trail."""

    def record(self, run: SyncRun) -> None:
        """Insert or replace the log row for ``run.session_id``."""
        ...

    def record_deletion(
        self,
        kind: RecordKind,
        external_id: str,
        local_id: str,
        session_id: str,
    ) -> DeletionRecord: ...

    def get_run(self, session_id: str) -> SyncRun | None: ...

    def recent_runs(
        self, limit: int = 10, tenant_token: str | None = None
    ) -> list[SyncRun]: ...

    def stats(self, tenant_token: str | None = None) -> dict[str, Any]: ...

    def cleanup(self, days_to_keep: int = 30) -> int: ...
