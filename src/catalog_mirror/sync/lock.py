"""TTL-bounded single-writer lock, scoped per tenant.

``SyncLock`` builds acquisition, reclamation, refresh and release on top of
one primitive: an atomic compare-and-set of the lock record stored under a
tenant-derived key.  Two backends provide that primitive:

* ``MemoryLockBackend`` -- a dict guarded by a ``threading.Lock``; for one
  process.
* ``FileLockBackend`` -- one JSON file per key in a state directory; the
  compare-and-set runs while holding an ``O_EXCL`` guard file, so separate
  processes sharing the directory exclude each other.

A backend that cannot perform the compare-and-set reports failure; there
is no fallback that grants the lock unconditionally.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from catalog_mirror.errors import AlreadyLocked, LockStale
from catalog_mirror.sync.models import mask_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockToken:
    """Proof of lock ownership returned by ``SyncLock.acquire``."""

    tenant_token: str
    owner: str
    acquired_at: float
    ttl: int


def lock_key(tenant_token: str) -> str:
    """Storage key for a tenant's lock (never the raw token)."""
    digest = hashlib.sha256(tenant_token.encode("utf-8")).hexdigest()
    return f"sync-lock-{digest[:24]}"


class LockBackend(Protocol):
    """Atomic storage for lock records."""

    def read(self, key: str) -> dict[str, Any] | None: ...

    def compare_and_set(
        self,
        key: str,
        expected: dict[str, Any] | None,
        new: dict[str, Any] | None,
    ) -> bool: ...


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class MemoryLockBackend:
    """In-process lock storage."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._records: dict[str, dict[str, Any]] = {}

    def read(self, key: str) -> dict[str, Any] | None:
        with self._guard:
            record = self._records.get(key)
            return dict(record) if record is not None else None

    def compare_and_set(
        self,
        key: str,
        expected: dict[str, Any] | None,
        new: dict[str, Any] | None,
    ) -> bool:
        with self._guard:
            if self._records.get(key) != expected:
                return False
            if new is None:
                self._records.pop(key, None)
            else:
                self._records[key] = dict(new)
            return True


class FileLockBackend:
    """Lock storage shared between processes through a directory.

    Args:
        lock_dir: Directory holding lock and guard files.
        guard_timeout: Seconds to wait for the guard before giving up.
        guard_stale_after: Age in seconds after which a leftover guard
            file (from a crashed process) is removed.
    """

    def __init__(
        self,
        lock_dir: Path,
        guard_timeout: float = 2.0,
        guard_stale_after: float = 30.0,
    ) -> None:
        self._lock_dir = Path(lock_dir)
        self._guard_timeout = guard_timeout
        self._guard_stale_after = guard_stale_after

    def read(self, key: str) -> dict[str, Any] | None:
        path = self._lock_dir / f"{key}.json"
        try:
            with open(path, encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            logger.warning("Unreadable lock file %s treated as free", path)
            return None

    def compare_and_set(
        self,
        key: str,
        expected: dict[str, Any] | None,
        new: dict[str, Any] | None,
    ) -> bool:
        self._lock_dir.mkdir(parents=True, exist_ok=True)
        guard = self._lock_dir / f"{key}.guard"
        if not self._take_guard(guard):
            logger.warning("Could not obtain lock guard %s", guard)
            return False
        try:
            if self.read(key) != expected:
                return False
            target = self._lock_dir / f"{key}.json"
            if new is None:
                try:
                    os.unlink(target)
                except FileNotFoundError:
                    pass
            else:
                self._write(target, new)
            return True
        finally:
            try:
                os.unlink(guard)
            except OSError:
                pass

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _take_guard(self, guard: Path) -> bool:
        deadline = time.monotonic() + self._guard_timeout
        while True:
            try:
                fd = os.open(guard, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                self._clear_stale_guard(guard)
                if time.monotonic() >= deadline:
                    return False
                time.sleep(0.01)
                continue
            os.close(fd)
            return True

    def _clear_stale_guard(self, guard: Path) -> None:
        try:
            age = time.time() - guard.stat().st_mtime
        except FileNotFoundError:
            return
        if age > self._guard_stale_after:
            logger.warning("Removing stale lock guard %s", guard)
            try:
                os.unlink(guard)
            except FileNotFoundError:
                pass

    def _write(self, target: Path, record: dict[str, Any]) -> None:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._lock_dir), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(record, fh)
            os.replace(tmp_path, target)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


# ---------------------------------------------------------------------------
# Lock
# ---------------------------------------------------------------------------


class SyncLock:
    """Per-tenant mutual exclusion with stale-lock reclamation.

    A lock record older than its TTL is stale and the next ``acquire``
    replaces it.  ``release`` is idempotent and only removes the record the
    caller owns.

    Args:
        backend: Compare-and-set storage for lock records.
        clock: Returns the current time in seconds.
    """

    def __init__(
        self,
        backend: LockBackend | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend if backend is not None else MemoryLockBackend()
        self._clock = clock

    def acquire(self, tenant_token: str, ttl: int) -> LockToken:
        """Take the tenant's lock.

        Raises:
            AlreadyLocked: If a live holder owns the lock, or another caller
                won the compare-and-set race.
        """
        key = lock_key(tenant_token)
        now = self._clock()
        current = self._backend.read(key)
        label = mask_token(tenant_token)

        if current is not None and not self._expired(current, now):
            raise AlreadyLocked(label, current.get("acquired_at"))

        if current is not None:
            logger.warning(
                "Reclaiming stale sync lock for %s (held since %s)",
                label,
                current.get("acquired_at"),
            )

        record = {
            "owner": uuid.uuid4().hex,
            "acquired_at": now,
            "ttl": int(ttl),
        }
        if not self._backend.compare_and_set(key, current, record):
            raise AlreadyLocked(label)

        logger.debug("Sync lock acquired for %s", label)
        return LockToken(
            tenant_token=tenant_token,
            owner=record["owner"],
            acquired_at=now,
            ttl=int(ttl),
        )

    def release(self, token: LockToken) -> bool:
        """Release *token*'s lock.

        Returns:
            ``True`` if the lock was removed, ``False`` if the caller no
            longer owned it (already released or reclaimed).
        """
        key = lock_key(token.tenant_token)
        current = self._backend.read(key)
        if current is None or current.get("owner") != token.owner:
            return False
        released = self._backend.compare_and_set(key, current, None)
        if released:
            logger.debug(
                "Sync lock released for %s", mask_token(token.tenant_token)
            )
        return released

    def refresh(self, token: LockToken) -> LockToken:
        """Renew the acquisition time of a held lock.

        Raises:
            LockStale: If the lock is no longer owned by *token*.
        """
        key = lock_key(token.tenant_token)
        current = self._backend.read(key)
        if current is None or current.get("owner") != token.owner:
            raise LockStale(
                f"Sync lock for {mask_token(token.tenant_token)} was lost"
            )
        now = self._clock()
        renewed = dict(current, acquired_at=now)
        if not self._backend.compare_and_set(key, current, renewed):
            raise LockStale(
                f"Sync lock for {mask_token(token.tenant_token)} was lost"
            )
        return LockToken(
            tenant_token=token.tenant_token,
            owner=token.owner,
            acquired_at=now,
            ttl=token.ttl,
        )

    def is_stale(self, token: LockToken) -> bool:
        """Return ``True`` if *token* no longer guarantees exclusivity."""
        current = self._backend.read(lock_key(token.tenant_token))
        if current is None or current.get("owner") != token.owner:
            return True
        return self._expired(current, self._clock())

    @contextmanager
    def held(self, tenant_token: str, ttl: int) -> Iterator[LockToken]:
        """Acquire the tenant's lock for the duration of a ``with`` block."""
        token = self.acquire(tenant_token, ttl)
        try:
            yield token
        finally:
            self.release(token)

    @staticmethod
    def _expired(record: dict[str, Any], now: float) -> bool:
        acquired_at = float(record.get("acquired_at", 0.0))
        ttl = float(record.get("ttl", 0))
        return now - acquired_at > ttl
