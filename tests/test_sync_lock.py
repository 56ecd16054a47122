"""Tests for the per-tenant sync lock.

Covers:
- Acquire / contention / release
- Stale lock reclamation after the TTL
- Refresh after losing the lock raises LockStale
- Idempotent release
- held() context manager
- FileLockBackend sharing state through a directory
- Lock keys never contain the raw tenant token
"""

from __future__ import annotations

import json

import pytest

from catalog_mirror.errors import AlreadyLocked, LockStale
from catalog_mirror.sync.lock import (
    FileLockBackend,
    MemoryLockBackend,
    SyncLock,
    lock_key,
)

TENANT = "tenant-secret-token"
TTL = 3600


class FakeTime:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def lock(fake_time):
    return SyncLock(MemoryLockBackend(), clock=fake_time)


class TestAcquireRelease:
    def test_acquire_returns_token(self, lock, fake_time):
        token = lock.acquire(TENANT, TTL)
        assert token.tenant_token == TENANT
        assert token.acquired_at == fake_time.now
        assert token.ttl == TTL

    def test_second_acquire_raises(self, lock):
        lock.acquire(TENANT, TTL)
        with pytest.raises(AlreadyLocked) as excinfo:
            lock.acquire(TENANT, TTL)
        assert TENANT not in str(excinfo.value)

    def test_tenants_are_independent(self, lock):
        lock.acquire(TENANT, TTL)
        assert lock.acquire("other-tenant", TTL).tenant_token == "other-tenant"

    def test_release_frees_lock(self, lock):
        token = lock.acquire(TENANT, TTL)
        assert lock.release(token) is True
        lock.acquire(TENANT, TTL)

    def test_release_is_idempotent(self, lock):
        token = lock.acquire(TENANT, TTL)
        assert lock.release(token) is True
        assert lock.release(token) is False


class TestStaleLocks:
    def test_live_lock_within_ttl(self, lock, fake_time):
        lock.acquire(TENANT, TTL)
        fake_time.now += TTL
        with pytest.raises(AlreadyLocked):
            lock.acquire(TENANT, TTL)

    def test_expired_lock_is_reclaimed(self, lock, fake_time):
        first = lock.acquire(TENANT, TTL)
        fake_time.now += TTL + 1
        second = lock.acquire(TENANT, TTL)
        assert second.owner != first.owner
        assert lock.is_stale(first) is True
        assert lock.is_stale(second) is False

    def test_old_owner_cannot_release_reclaimed_lock(self, lock, fake_time):
        first = lock.acquire(TENANT, TTL)
        fake_time.now += TTL + 1
        lock.acquire(TENANT, TTL)
        assert lock.release(first) is False
        with pytest.raises(AlreadyLocked):
            lock.acquire(TENANT, TTL)

    def test_refresh_extends_lifetime(self, lock, fake_time):
        token = lock.acquire(TENANT, TTL)
        fake_time.now += TTL - 10
        token = lock.refresh(token)
        fake_time.now += TTL - 10
        assert lock.is_stale(token) is False
        with pytest.raises(AlreadyLocked):
            lock.acquire(TENANT, TTL)

    def test_refresh_after_reclaim_raises(self, lock, fake_time):
        first = lock.acquire(TENANT, TTL)
        fake_time.now += TTL + 1
        lock.acquire(TENANT, TTL)
        with pytest.raises(LockStale):
            lock.refresh(first)


class TestHeld:
    def test_released_on_exit(self, lock):
        with lock.held(TENANT, TTL) as token:
            assert token.tenant_token == TENANT
        lock.acquire(TENANT, TTL)

    def test_released_on_error(self, lock):
        with pytest.raises(RuntimeError):
            with lock.held(TENANT, TTL):
                raise RuntimeError("boom")
        lock.acquire(TENANT, TTL)


class TestFileLockBackend:
    def test_shared_between_instances(self, tmp_path, fake_time):
        first = SyncLock(FileLockBackend(tmp_path), clock=fake_time)
        second = SyncLock(FileLockBackend(tmp_path), clock=fake_time)
        token = first.acquire(TENANT, TTL)
        with pytest.raises(AlreadyLocked):
            second.acquire(TENANT, TTL)
        first.release(token)
        second.acquire(TENANT, TTL)

    def test_lock_file_has_no_token(self, tmp_path, fake_time):
        SyncLock(FileLockBackend(tmp_path), clock=fake_time).acquire(TENANT, TTL)
        files = list(tmp_path.glob("*.json"))
        assert len(files) == 1
        assert TENANT not in files[0].name
        record = json.loads(files[0].read_text())
        assert set(record) == {"owner", "acquired_at", "ttl"}

    def test_release_removes_file(self, tmp_path, fake_time):
        lock = SyncLock(FileLockBackend(tmp_path), clock=fake_time)
        lock.release(lock.acquire(TENANT, TTL))
        assert list(tmp_path.glob("*.json")) == []

    def test_corrupt_lock_file_treated_as_free(self, tmp_path, fake_time):
        (tmp_path / f"{lock_key(TENANT)}.json").write_text("{not json")
        backend = FileLockBackend(tmp_path)
        assert backend.read(lock_key(TENANT)) is None

    def test_busy_guard_fails_compare_and_set(self, tmp_path):
        backend = FileLockBackend(tmp_path, guard_timeout=0.05)
        key = lock_key(TENANT)
        (tmp_path / f"{key}.guard").write_text("")
        assert backend.compare_and_set(key, None, {"owner": "x"}) is False


class TestLockKey:
    def test_key_is_hashed(self):
        key = lock_key(TENANT)
        assert key.startswith("sync-lock-")
        assert TENANT not in key

    def test_key_is_stable_per_tenant(self):
        assert lock_key(TENANT) == lock_key(TENANT)
        assert lock_key(TENANT) != lock_key("other")
