"""Change detection for remote records.

Compares a record's fresh fingerprint with the fingerprint stored on its
registry entry and classifies the record as ``create``, ``update`` or
``unchanged``.  An ``unchanged`` record skips the payload write, but the
caller must still re-stamp its registry entry with the current session so
the sweep does not treat it as orphaned.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from catalog_mirror.sync.fingerprint import fingerprint
from catalog_mirror.sync.mapper import validate_external_id
from catalog_mirror.sync.models import (
    Classification,
    RecordKind,
    RegistryEntry,
    RemoteRecord,
    SyncAction,
)

logger = logging.getLogger(__name__)

# (tenant_token, kind, external_id) -> registry entry or None
RegistryLookup = Callable[[str, RecordKind, str], RegistryEntry | None]


class ChangeDetector:
    """Classify records against the registry of one tenant.

    Args:
        tenant_token: Tenant whose registry is consulted.
        registry_lookup: Returns the registry entry for a key, or ``None``.
        force_update_all: Classify every existing record as ``update``.
        force_update_ids: External ids always classified as ``update``
            when they already exist.
    """

    def __init__(
        self,
        tenant_token: str,
        registry_lookup: RegistryLookup,
        force_update_all: bool = False,
        force_update_ids: Iterable[str] = (),
    ) -> None:
        self.tenant_token = tenant_token
        self._lookup = registry_lookup
        self._force_all = force_update_all
        self._force_ids = {str(i) for i in force_update_ids}

    def classify(self, record: RemoteRecord) -> Classification:
        """Decide what write, if any, *record* requires.

        Raises:
            MappingError: If the record has no usable external id.
        """
        external_id = validate_external_id(record.external_id, record.kind)
        digest = fingerprint(record)
        entry = self._lookup(self.tenant_token, record.kind, external_id)

        if entry is None:
            return Classification(action=SyncAction.CREATE, fingerprint=digest)

        if self._force_all or external_id in self._force_ids:
            logger.debug(
                "Forced update for %s %s", record.kind.value, external_id
            )
            action = SyncAction.UPDATE
        elif entry.content_fingerprint != digest:
            action = SyncAction.UPDATE
        else:
            action = SyncAction.UNCHANGED

        return Classification(
            action=action, local_id=entry.local_id, fingerprint=digest
        )
