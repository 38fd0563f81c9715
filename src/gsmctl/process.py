"""Process controller for the managed game server.

The controller never keeps a long-lived handle: every operation rediscovers
the server through the process table by its executable name, so a restart
performed by someone else (or a crash) is always observed.
"""
from __future__ import annotations

import logging
import math
import subprocess
import sys
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path, PureWindowsPath
from typing import Any

import psutil

LOGGER = logging.getLogger(__name__)


class ProcessControlError(RuntimeError):
    """Raised when a process-control primitive fails."""


class ExecutableNotFound(ProcessControlError):
    """Raised when the server executable is missing."""


class StartFailed(ProcessControlError):
    """Raised when the server is not alive after the grace period."""


class StopFailed(ProcessControlError):
    """Raised when the server survives the forced kill."""


class ServerState(str, Enum):
    """Lifecycle states of the managed server."""

    STOPPED = "stopped"
    LAUNCHING = "launching"
    RUNNING = "running"
    TERMINATING = "terminating"
    START_FAILED = "start-failed"


class StopOutcome(str, Enum):
    """Result of a stop request."""

    NOT_RUNNING = "not-running"
    GRACEFUL = "graceful"
    FORCED_KILL = "forced-kill"
    FAILED = "failed"

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the server is confirmed stopped."""
        return self is not StopOutcome.FAILED


@dataclass(frozen=True, slots=True)
class ServerProcessHandle:
    """Reference to a running server process."""

    pid: int
    started_at: datetime
    working_dir: Path | None = None


def _matches_executable(info: dict[str, Any], executable: str) -> bool:
    target = executable.lower()
    stem = PureWindowsPath(target).stem
    candidates: list[str] = []
    name = info.get("name")
    if isinstance(name, str):
        candidates.append(name)
    exe = info.get("exe")
    if isinstance(exe, str) and exe:
        candidates.append(PureWindowsPath(exe).name)
    cmdline = info.get("cmdline")
    if isinstance(cmdline, list) and cmdline and isinstance(cmdline[0], str):
        candidates.append(PureWindowsPath(cmdline[0]).name)
    for candidate in candidates:
        lowered = candidate.lower()
        # Linux truncates process names to 15 characters.
        if lowered == target or (len(lowered) == 15 and stem.startswith(lowered)):
            return True
    return False


def _popen_options() -> dict[str, Any]:
    """Return platform-specific options that detach the spawned server."""
    if sys.platform == "win32":
        return {
            "creationflags": subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP,
        }
    return {"start_new_session": True}


@dataclass
class ProcessController:
    """Start, stop and observe the game server process."""

    executable_name: str
    poll_interval: float = 1.0
    kill_wait_seconds: float = 2.0
    sleep: Callable[[float], None] = time.sleep
    transitions: list[ServerState] = field(default_factory=list)

    # Discovery ---------------------------------------------------------
    def find_running(self) -> ServerProcessHandle | None:
        """Return the running server (lowest pid wins) or ``None``."""
        matches: list[ServerProcessHandle] = []
        for proc in self._iter_processes():
            info = getattr(proc, "info", None) or {}
            if not _matches_executable(info, self.executable_name):
                continue
            if info.get("status") == psutil.STATUS_ZOMBIE:
                continue
            created = info.get("create_time")
            started_at = (
                datetime.fromtimestamp(created, tz=UTC)
                if isinstance(created, (int, float))
                else datetime.now(tz=UTC)
            )
            cwd = info.get("cwd")
            matches.append(
                ServerProcessHandle(
                    pid=int(proc.pid),
                    started_at=started_at,
                    working_dir=Path(cwd) if isinstance(cwd, str) and cwd else None,
                )
            )
        if not matches:
            return None
        return min(matches, key=lambda handle: handle.pid)

    def state(self) -> ServerState:
        """Return ``RUNNING`` when the server is found, otherwise ``STOPPED``."""
        return ServerState.RUNNING if self.find_running() is not None else ServerState.STOPPED

    # Start -------------------------------------------------------------
    def start(self, exe_path: Path, work_dir: Path) -> ServerProcessHandle:
        """Spawn the server without waiting for it to initialise."""
        if not exe_path.is_file():
            raise ExecutableNotFound(f"Server executable not found: {exe_path}")
        self._transition(ServerState.LAUNCHING)
        try:
            pid = self._spawn(exe_path, work_dir)
        except OSError as exc:
            self._transition(ServerState.START_FAILED)
            raise ProcessControlError(f"Failed to launch {exe_path}: {exc}") from exc
        LOGGER.debug("Spawned %s as pid %s", exe_path, pid)
        return ServerProcessHandle(
            pid=pid,
            started_at=datetime.now(tz=UTC),
            working_dir=work_dir,
        )

    def confirm_running(self, grace_seconds: float) -> ServerProcessHandle:
        """Wait *grace_seconds* and confirm the server is alive."""
        self.sleep(grace_seconds)
        handle = self.find_running()
        if handle is None:
            self._transition(ServerState.START_FAILED)
            raise StartFailed(
                f"{self.executable_name} is not running {grace_seconds:g}s after launch."
            )
        self._transition(ServerState.RUNNING)
        return handle

    def launch(
        self,
        exe_path: Path,
        work_dir: Path,
        grace_seconds: float,
    ) -> tuple[ServerProcessHandle, bool]:
        """Start the server unless it already runs; return ``(handle, spawned)``."""
        existing = self.find_running()
        if existing is not None:
            self._transition(ServerState.RUNNING)
            return existing, False
        self.start(exe_path, work_dir)
        return self.confirm_running(grace_seconds), True

    # Stop --------------------------------------------------------------
    def stop(
        self,
        handle: ServerProcessHandle | None = None,
        timeout_seconds: float = 30.0,
    ) -> StopOutcome:
        """Terminate the server, escalating to a kill after *timeout_seconds*."""
        current = self.find_running()
        if current is None:
            if handle is not None:
                LOGGER.debug("Handle for pid %s is stale; server already stopped", handle.pid)
            self._transition(ServerState.STOPPED)
            return StopOutcome.NOT_RUNNING

        self._transition(ServerState.TERMINATING)
        self._terminate(current.pid)
        if self._wait_for_exit(timeout_seconds):
            self._transition(ServerState.STOPPED)
            return StopOutcome.GRACEFUL

        LOGGER.debug("Server ignored termination for %ss; killing by name", timeout_seconds)
        self.kill_all()
        if self._wait_for_exit(self.kill_wait_seconds):
            self._transition(ServerState.STOPPED)
            return StopOutcome.FORCED_KILL
        return StopOutcome.FAILED

    def ensure_stopped(self, timeout_seconds: float = 30.0) -> StopOutcome:
        """Stop the server and raise :class:`StopFailed` if it survives."""
        outcome = self.stop(timeout_seconds=timeout_seconds)
        if outcome is StopOutcome.FAILED:
            raise StopFailed(
                f"{self.executable_name} is still running after a forced kill."
            )
        return outcome

    def kill_all(self) -> int:
        """Kill every process matching the executable name; return the count."""
        killed = 0
        for proc in self._iter_processes():
            info = getattr(proc, "info", None) or {}
            if _matches_executable(info, self.executable_name):
                self._kill(int(proc.pid))
                killed += 1
        return killed

    def _wait_for_exit(self, seconds: float) -> bool:
        polls = max(1, math.ceil(seconds / self.poll_interval))
        for _ in range(polls):
            self.sleep(self.poll_interval)
            if self.find_running() is None:
                return True
        return False

    def _transition(self, state: ServerState) -> None:
        self.transitions.append(state)

    # Supervisor primitives (isolated for testing) ------------------------
    def _iter_processes(self) -> Iterable[Any]:
        return psutil.process_iter(["name", "exe", "cmdline", "create_time", "cwd", "status"])

    def _spawn(self, exe_path: Path, work_dir: Path) -> int:
        proc = subprocess.Popen(  # noqa: S603 - executable comes from validated config
            [str(exe_path)],
            cwd=str(work_dir),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            **_popen_options(),
        )
        return proc.pid

    def _terminate(self, pid: int) -> None:
        try:
            psutil.Process(pid).terminate()
        except psutil.NoSuchProcess:
            return
        except psutil.AccessDenied as exc:
            LOGGER.debug("Access denied terminating pid %s: %s", pid, exc)

    def _kill(self, pid: int) -> None:
        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            return
        except psutil.AccessDenied as exc:
            LOGGER.debug("Access denied killing pid %s: %s", pid, exc)


__all__ = [
    "ExecutableNotFound",
    "ProcessControlError",
    "ProcessController",
    "ServerProcessHandle",
    "ServerState",
    "StartFailed",
    "StopFailed",
    "StopOutcome",
]
