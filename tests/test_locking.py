"""Tests for the locking primitives."""
from __future__ import annotations

import errno
import json
import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

from gsmctl import locking as locking_module
from gsmctl.locking import LockError, LockManager, LockTimeoutError


def test_server_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    lock_path = tmp_path / "run" / "gsmctl.lock"
    manager = LockManager(lock_path, default_timeout=1.0)

    with manager.server_lock("backup") as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)
        assert data["operation"] == "backup"

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.server_lock("stop", timeout=0.2):
        pass
    assert lock_path.exists()


def test_server_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "gsmctl.lock", default_timeout=1.0, retry_interval=0.02)

    with manager.server_lock("update"):
        with pytest.raises(LockTimeoutError):
            with manager.server_lock("backup", timeout=0.1):
                pass


def test_lock_file_in_unwritable_location_raises(tmp_path: Path) -> None:
    """Failure to create the lock file surfaces as LockError."""
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    manager = LockManager(blocker / "gsmctl.lock", default_timeout=0.1)

    with pytest.raises(LockError):
        with manager.server_lock():
            pass


class FakeMsvcrt:
    """Byte-range locking double shared by every descriptor."""

    LK_UNLCK = 0
    LK_NBLCK = 2

    def __init__(self) -> None:
        self.owner: int | None = None
        self.calls: list[tuple[int, int, int]] = []

    def locking(self, fd: int, mode: int, nbytes: int) -> None:
        self.calls.append((mode, nbytes, os.lseek(fd, 0, os.SEEK_CUR)))
        if mode == self.LK_UNLCK:
            self.owner = None
            return
        if self.owner is not None:
            raise OSError(errno.EACCES, "Permission denied")
        self.owner = fd


@pytest.fixture
def windows_locking(monkeypatch: pytest.MonkeyPatch) -> FakeMsvcrt:
    fake = FakeMsvcrt()
    monkeypatch.setattr(locking_module, "sys", SimpleNamespace(platform="win32"))
    monkeypatch.setitem(sys.modules, "msvcrt", fake)
    return fake


def test_windows_lock_uses_first_byte(tmp_path: Path, windows_locking: FakeMsvcrt) -> None:
    """On Windows the first byte is locked and unlocked from offset zero."""
    lock_path = tmp_path / "gsmctl.lock"
    manager = LockManager(lock_path, default_timeout=1.0)

    with manager.server_lock("start"):
        assert windows_locking.owner is not None
        assert json.loads(lock_path.read_text(encoding="utf-8"))["operation"] == "start"

    assert windows_locking.owner is None
    assert windows_locking.calls == [
        (FakeMsvcrt.LK_NBLCK, 1, 0),
        (FakeMsvcrt.LK_UNLCK, 1, 0),
    ]


def test_windows_lock_timeout(tmp_path: Path, windows_locking: FakeMsvcrt) -> None:
    manager = LockManager(tmp_path / "gsmctl.lock", default_timeout=1.0, retry_interval=0.02)

    with manager.server_lock("update"):
        with pytest.raises(LockTimeoutError):
            with manager.server_lock("backup", timeout=0.1):
                pass
