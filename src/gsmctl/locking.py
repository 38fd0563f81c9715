"""Advisory lock serialising mutating lifecycle operations.

Backup and update both touch the install directory, so start, stop, update
and backup acquire an exclusive lock on a single lock file before doing any
work. POSIX hosts use ``fcntl.flock``; Windows hosts lock the first byte with
``msvcrt.locking``. The lock file persists for diagnostics and carries metadata about
the most recent holder.
"""
from __future__ import annotations

import json
import os
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path


class LockError(RuntimeError):
    """Raised when the lock file cannot be prepared."""


class LockTimeoutError(LockError):
    """Raised when the lock cannot be acquired within the timeout."""


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire the exclusive lifecycle lock."""

    def __init__(
        self,
        lock_file: Path,
        default_timeout: float,
        *,
        retry_interval: float = 0.1,
    ) -> None:
        """Store the lock location and timing parameters."""
        self.lock_file = lock_file.expanduser()
        self.default_timeout = default_timeout
        self.retry_interval = retry_interval

    @contextmanager
    def server_lock(
        self,
        operation: str = "lifecycle",
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the lifecycle lock for the duration of the ``with`` block."""
        effective_timeout = self.default_timeout if timeout is None else timeout
        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_file, os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as exc:
            raise LockError(f"Unable to open lock file {self.lock_file}: {exc}") from exc

        start = time.monotonic()
        try:
            while True:
                try:
                    _try_lock(fd)
                    break
                except OSError as exc:
                    if time.monotonic() - start >= effective_timeout:
                        raise LockTimeoutError(
                            f"Timed out after {effective_timeout:.1f}s waiting for "
                            f"{self.lock_file}; another gsmctl operation is running."
                        ) from exc
                    time.sleep(self.retry_interval)

            wait_ms = int((time.monotonic() - start) * 1000)
            self._write_metadata(fd, operation)
            try:
                yield LockHandle(path=self.lock_file, wait_ms=wait_ms)
            finally:
                _unlock(fd)
        finally:
            os.close(fd)

    def _write_metadata(self, fd: int, operation: str) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(self.lock_file),
            "operation": operation,
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        data = (json.dumps(payload) + "\n").encode("utf-8")
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, data)


def _try_lock(fd: int) -> None:
    """Take a non-blocking exclusive lock on *fd*; raise ``OSError`` if it is held."""
    if sys.platform == "win32":
        import msvcrt

        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock(fd: int) -> None:
    if sys.platform == "win32":
        import msvcrt

        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_UN)


__all__ = ["LockError", "LockHandle", "LockManager", "LockTimeoutError"]
