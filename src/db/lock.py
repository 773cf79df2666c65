"""
Advisory cross-process lock, one per session id.

The lock is a file created with O_CREAT | O_EXCL: the creation itself fails when the file exists, so there is
no window between "check" and "create". The file holds the pid and time of the holder, which lets a waiter
reclaim a lock whose holder died without cleaning up (once the lease has expired).
"""

import json
import logging
import os
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from types import TracebackType
from typing import Callable, Generator, Self

from src.core.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 5.0
DEFAULT_POLL_S = 0.05


class FileLock:
    """Scoped lock: acquire on enter, always release on exit (success, exception, early return)."""

    def __init__(
        self,
        path: Path,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        poll_s: float = DEFAULT_POLL_S,
        lease_s: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.path = path
        self.timeout_s = timeout_s
        self.poll_s = poll_s
        self.lease_s = lease_s
        self._sleep = sleep
        self._monotonic = monotonic
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        started = self._monotonic()
        while True:
            if self._try_create():
                self._held = True
                return
            if self._reclaim_if_stale():
                continue
            if self._monotonic() - started >= self.timeout_s:
                raise LockTimeoutError(
                    f"Timed out waiting for lock {self.path.name}. Please retry."
                )
            self._sleep(self.poll_s)

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning("Lock %s was already gone on release.", self.path)

    def __enter__(self) -> Self:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.release()

    # --- internals ---
    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(
                {"pid": os.getpid(), "acquired_at": time.time(), "token": uuid.uuid4().hex},
                handle,
            )
        return True

    def _reclaim_if_stale(self) -> bool:
        """
        Remove the lock file if it is older than the lease. Returns True if it was removed (or vanished).

        Several waiters can judge the same file stale. The file is first renamed to a name owned by this
        waiter (rename is atomic), then its content is compared with what was judged stale: if another
        waiter reclaimed in between, the rename has grabbed that waiter's fresh lock, which is put back.
        """
        if self.lease_s is None:
            return False
        try:
            age = time.time() - self.path.stat().st_mtime
            observed = self.path.read_bytes()
        except FileNotFoundError:
            # released in the meantime: just try again
            return True
        if age < self.lease_s:
            return False

        claimed = self.path.with_name(
            f"{self.path.name}.stale-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        )
        try:
            os.rename(self.path, claimed)
        except FileNotFoundError:
            return True
        if claimed.read_bytes() != observed:
            self._restore(claimed)
            return False

        claimed.unlink()
        logger.warning(
            "Reclaimed stale lock %s (held for %.1fs, lease %.1fs).",
            self.path,
            age,
            self.lease_s,
        )
        return True

    def _restore(self, claimed: Path) -> None:
        """Put back a live lock taken by mistake. link() fails instead of overwriting a newer lock."""
        try:
            os.link(claimed, self.path)
        except FileExistsError:
            logger.warning("Lock %s was re-created before a live lock could be restored.", self.path)
        finally:
            claimed.unlink()


def lock_path(lock_dir: Path, session_id: str) -> Path:
    return lock_dir / f"join-{session_id}.lock"


@contextmanager
def session_lock(
    lock_dir: Path,
    session_id: str,
    timeout_s: float = DEFAULT_TIMEOUT_S,
    poll_s: float = DEFAULT_POLL_S,
    lease_s: float | None = None,
) -> Generator[FileLock, None, None]:
    with FileLock(
        lock_path(lock_dir, session_id),
        timeout_s=timeout_s,
        poll_s=poll_s,
        lease_s=lease_s,
    ) as lock:
        yield lock
