"""JSON-file persistence for the mirror and the audit log.

Both stores keep their working set in memory (inheriting all behaviour
from the dict-backed stores) and rewrite one JSON file after every
mutation:

* ``mirror.json`` -- entities, registry entries and the id counter.
* ``audit.json`` -- sync run log and deletion records.

Writes are atomic: the data goes to a temporary file in the same
directory which then replaces the target via ``os.replace()``, so readers
never see a partially written file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from catalog_mirror.errors import PersistError
from catalog_mirror.storage.memory import (
    InMemoryAuditLog,
    InMemoryMirror,
    _registry_key,
    _utcnow,
)
from catalog_mirror.sync.models import DeletionRecord, RegistryEntry, SyncRun

logger = logging.getLogger(__name__)

STATE_VERSION = 1


def atomic_write_json(path: Path, data: Any) -> None:
    """Write *data* as JSON to *path* atomically.

    Creates the parent directory if needed.

    Raises:
        PersistError: If the file cannot be written.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    except OSError as exc:
        raise PersistError(f"Cannot write {path}: {exc}") from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
        os.replace(tmp_path, path)
    except BaseException as exc:
        # Clean up temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        if isinstance(exc, OSError):
            raise PersistError(f"Cannot write {path}: {exc}") from exc
        raise


def _load_json(path: Path) -> dict | None:
    if not path.exists():
        return None
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


class JsonFileMirror(InMemoryMirror):
    """Mirror persisted to ``<state_dir>/mirror.json``.

    Args:
        state_dir: Directory holding the state file.
    """

    def __init__(self, state_dir: Path) -> None:
        super().__init__()
        self._path = Path(state_dir) / "mirror.json"
        data = _load_json(self._path)
        if data is not None:
            self._entities = data.get("entities", {})
            self._next_id = int(data.get("next_id", 1))
            for raw in data.get("registry", []):
                entry = RegistryEntry(**raw)
                self._registry[
                    _registry_key(
                        entry.tenant_token, entry.kind, entry.external_id
                    )
                ] = entry
            logger.debug(
                "Loaded mirror state: %d entities, %d registry entries",
                len(self._entities),
                len(self._registry),
            )

    def _commit(self) -> None:
        atomic_write_json(
            self._path,
            {
                "version": STATE_VERSION,
                "next_id": self._next_id,
                "entities": self._entities,
                "registry": [
                    e.model_dump(mode="json") for e in self._registry.values()
                ],
            },
        )


class JsonFileAuditLog(InMemoryAuditLog):
    """Audit log persisted to ``<state_dir>/audit.json``.

    Args:
        state_dir: Directory holding the state file.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        state_dir: Path,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(clock=clock)
        self._path = Path(state_dir) / "audit.json"
        data = _load_json(self._path)
        if data is not None:
            for raw in data.get("runs", []):
                run = SyncRun(**raw)
                self._runs[run.session_id] = run
            self.deletions = [
                DeletionRecord(**raw) for raw in data.get("deletions", [])
            ]

    def _commit(self) -> None:
        atomic_write_json(
            self._path,
            {
                "version": STATE_VERSION,
                "runs": [r.model_dump(mode="json") for r in self._runs.values()],
                "deletions": [d.model_dump(mode="json") for d in self.deletions],
            },
        )
