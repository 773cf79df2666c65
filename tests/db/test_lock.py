"""Unit tests for src/db/lock.py"""

import os
import time
from pathlib import Path

import pytest

from src.core.exceptions import LockTimeoutError
from src.db.lock import FileLock, lock_path, session_lock


class FakeTimer:
    """sleep() moves the monotonic clock forward instead of blocking."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps = 0

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps += 1
        self.now += seconds


def test_acquire_creates_and_release_removes_the_file(tmp_path: Path) -> None:
    path = tmp_path / "locks" / "join-1.lock"
    lock = FileLock(path)

    lock.acquire()
    assert lock.held
    assert path.exists()

    lock.release()
    assert not lock.held
    assert not path.exists()


def test_release_is_idempotent(tmp_path: Path) -> None:
    lock = FileLock(tmp_path / "a.lock")
    lock.release()
    with lock:
        pass
    lock.release()
    assert not (tmp_path / "a.lock").exists()


def test_second_holder_times_out(tmp_path: Path) -> None:
    path = tmp_path / "join-1.lock"
    timer = FakeTimer()
    with FileLock(path):
        contender = FileLock(
            path, timeout_s=1.0, poll_s=0.25, sleep=timer.sleep, monotonic=timer.monotonic
        )
        with pytest.raises(LockTimeoutError, match="join-1.lock"):
            contender.acquire()
        assert not contender.held

    assert timer.sleeps == 4


def test_lock_is_released_when_the_block_raises(tmp_path: Path) -> None:
    path = tmp_path / "join-1.lock"
    with pytest.raises(RuntimeError):
        with FileLock(path):
            raise RuntimeError("boom")
    assert not path.exists()

    with FileLock(path, timeout_s=0.0) as lock:
        assert lock.held


def test_stale_lock_is_reclaimed_after_the_lease(tmp_path: Path) -> None:
    path = tmp_path / "join-1.lock"
    path.write_text('{"pid": 1}')
    old = time.time() - 120
    os.utime(path, (old, old))

    with FileLock(path, timeout_s=0.0, lease_s=60) as lock:
        assert lock.held
    assert not path.exists()


def test_fresh_lock_is_not_reclaimed(tmp_path: Path) -> None:
    path = tmp_path / "join-1.lock"
    path.write_text('{"pid": 1}')
    timer = FakeTimer()

    lock = FileLock(
        path, timeout_s=0.1, poll_s=0.05, lease_s=60, sleep=timer.sleep, monotonic=timer.monotonic
    )
    with pytest.raises(LockTimeoutError):
        lock.acquire()
    assert path.exists()


def test_without_lease_a_stale_lock_is_kept(tmp_path: Path) -> None:
    path = tmp_path / "join-1.lock"
    path.write_text('{"pid": 1}')
    old = time.time() - 3600
    os.utime(path, (old, old))

    with pytest.raises(LockTimeoutError):
        FileLock(path, timeout_s=0.0).acquire()


def test_session_lock_uses_one_file_per_session(tmp_path: Path) -> None:
    assert lock_path(tmp_path, "3") == tmp_path / "join-3.lock"

    with session_lock(tmp_path, "3", timeout_s=0.0) as first:
        assert first.path.exists()
        # another session is not blocked
        with session_lock(tmp_path, "4", timeout_s=0.0) as second:
            assert second.held
        with pytest.raises(LockTimeoutError):
            with session_lock(tmp_path, "3", timeout_s=0.0):
                pass
    assert not lock_path(tmp_path, "3").exists()


def test_two_waiters_reclaiming_one_stale_lock(tmp_path: Path, monkeypatch) -> None:
    """The second waiter's rename grabs the first waiter's fresh lock: it must put it back and keep waiting."""
    path = tmp_path / "join-1.lock"
    path.write_text('{"pid": 1}')
    old = time.time() - 120
    os.utime(path, (old, old))

    first = FileLock(path, timeout_s=0.0, lease_s=60)
    second = FileLock(path, timeout_s=0.0, lease_s=60)
    real_rename = os.rename
    interleaved: list[bool] = []

    def rename_after_first_took_over(src, dst) -> None:
        if not interleaved:
            interleaved.append(True)
            # the first waiter reclaims the stale file and takes the lock in between
            first.acquire()
        real_rename(src, dst)

    monkeypatch.setattr(os, "rename", rename_after_first_took_over)
    with pytest.raises(LockTimeoutError):
        second.acquire()

    assert first.held
    assert not second.held
    assert path.exists()
    assert sorted(p.name for p in tmp_path.iterdir()) == ["join-1.lock"]

    first.release()
    assert not path.exists()
