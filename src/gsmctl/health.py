"""Health evaluation for the managed server.

The evaluator runs a fixed battery of independent checks (process, ports,
server log) and aggregates them into a :class:`HealthReport`. Every check
runs even when an earlier one fails; a check that raises becomes a FAIL
result instead of aborting the battery.
"""
from __future__ import annotations

import re
import socket
import time
import traceback
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

import psutil

from .config import LifecycleConfig
from .process import ProcessController


class HealthCheckFailed(RuntimeError):
    """Raised when a health report contains a failing check."""


class HealthStatus(str, Enum):
    """Outcome of an individual health check."""

    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"
    INFO = "info"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status represents a failure."""
        return self is HealthStatus.FAIL


class LogTier(str, Enum):
    """Display tier for a server log line (presentation only)."""

    ERROR = "error"
    WARN = "warn"
    SUCCESS = "success"
    NEUTRAL = "neutral"


_TIER_PATTERNS: tuple[tuple[LogTier, re.Pattern[str]], ...] = (
    (LogTier.ERROR, re.compile(r"error|fail|exception", re.IGNORECASE)),
    (LogTier.WARN, re.compile(r"warn", re.IGNORECASE)),
    (LogTier.SUCCESS, re.compile(r"started|ready|success", re.IGNORECASE)),
)


def classify_log_line(line: str) -> LogTier:
    """Return the display tier for *line* by keyword match."""
    for tier, pattern in _TIER_PATTERNS:
        if pattern.search(line):
            return tier
    return LogTier.NEUTRAL


@dataclass(frozen=True, slots=True)
class LogLine:
    """A tail line from the server log and its display tier."""

    text: str
    tier: LogTier


@dataclass(frozen=True, slots=True)
class HealthCheckResult:
    """Outcome of running one health check."""

    id: str
    status: HealthStatus
    message: str
    data: Mapping[str, Any] | None = None
    lines: Sequence[LogLine] = field(default_factory=tuple)
    duration_ms: int | None = None

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the check failed."""
        return self.status.is_failure


@dataclass(frozen=True, slots=True)
class HealthCheckDefinition:
    """Identifier + callable for a health check."""

    id: str
    run: Callable[[], HealthCheckResult]


@dataclass(frozen=True, slots=True)
class HealthReport:
    """Ordered results of a health run."""

    results: Sequence[HealthCheckResult]
    metadata: Mapping[str, Any] | None = None

    @property
    def healthy(self) -> bool:
        """Return ``True`` when no check failed."""
        return not any(result.is_failure for result in self.results)

    @property
    def failures(self) -> list[HealthCheckResult]:
        """Return the failing checks in order."""
        return [result for result in self.results if result.is_failure]

    @property
    def running(self) -> bool:
        """Return ``True`` when the process check passed."""
        return any(
            result.id == "process" and result.status is HealthStatus.PASS
            for result in self.results
        )

    def get(self, check_id: str) -> HealthCheckResult | None:
        """Return the result for *check_id* if present."""
        for result in self.results:
            if result.id == check_id:
                return result
        return None

    def raise_for_status(self) -> None:
        """Raise :class:`HealthCheckFailed` when any check failed."""
        failures = self.failures
        if failures:
            joined = "; ".join(f"{result.id}: {result.message}" for result in failures)
            raise HealthCheckFailed(f"Health check failed ({joined}).")

    def to_dict(self) -> dict[str, object]:
        """Convert the report into a JSON-serialisable mapping."""
        results_payload: list[dict[str, object]] = []
        for result in self.results:
            payload: dict[str, object] = {
                "id": result.id,
                "status": result.status.value,
                "message": result.message,
            }
            if result.data:
                payload["data"] = _sanitize_payload(result.data)
            if result.lines:
                payload["lines"] = [
                    {"tier": line.tier.value, "text": line.text} for line in result.lines
                ]
            if result.duration_ms is not None:
                payload["duration_ms"] = result.duration_ms
            results_payload.append(payload)
        return {
            "healthy": self.healthy,
            "results": results_payload,
            "metadata": _sanitize_payload(self.metadata) if self.metadata else {},
        }


def _sanitize_payload(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize_payload(item) for item in value]
    return str(value)


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def listening_ports() -> set[int]:
    """Return local ports with a TCP listener or a bound UDP socket."""
    ports: set[int] = set()
    for conn in psutil.net_connections(kind="inet"):
        if not conn.laddr:
            continue
        if conn.status == psutil.CONN_LISTEN or conn.type == socket.SOCK_DGRAM:
            ports.add(conn.laddr.port)
    return ports


class HealthEvaluator:
    """Run the process, port and log checks for the configured server."""

    def __init__(
        self,
        config: LifecycleConfig,
        controller: ProcessController,
        *,
        port_scanner: Callable[[], set[int]] = listening_ports,
    ) -> None:
        """Store the configuration and collaborators used by the checks."""
        self.config = config
        self.controller = controller
        self.port_scanner = port_scanner

    def checks(self) -> Sequence[HealthCheckDefinition]:
        """Return the check battery in reporting order."""
        return (
            HealthCheckDefinition("process", self.check_process),
            HealthCheckDefinition("ports", self.check_ports),
            HealthCheckDefinition("log", self.check_log),
        )

    def run(self) -> HealthReport:
        """Run every check and build the report."""
        start = time.perf_counter()
        results = [_run_single_check(check) for check in self.checks()]
        return HealthReport(
            results=tuple(results),
            metadata={
                "server": self.config.server.name,
                "duration_ms": _duration_ms(start),
            },
        )

    # Checks ------------------------------------------------------------
    def check_process(self) -> HealthCheckResult:
        """PASS when the server process is found."""
        handle = self.controller.find_running()
        executable = self.config.server.executable
        if handle is None:
            return HealthCheckResult(
                id="process",
                status=HealthStatus.FAIL,
                message=f"{executable} is not running.",
            )
        return HealthCheckResult(
            id="process",
            status=HealthStatus.PASS,
            message=f"{executable} running (pid {handle.pid}).",
            data={
                "pid": handle.pid,
                "started_at": handle.started_at.isoformat(timespec="seconds"),
                "working_dir": str(handle.working_dir) if handle.working_dir else None,
            },
        )

    def check_ports(self) -> HealthCheckResult:
        """PASS only when every configured port has a listener."""
        ports = self.config.server.ports
        try:
            bound = self.port_scanner()
        except (psutil.AccessDenied, PermissionError) as exc:
            return HealthCheckResult(
                id="ports",
                status=HealthStatus.FAIL,
                message=f"Unable to inspect socket table: {exc}",
                data={role: {"port": port, "listening": None} for role, port in ports.items()},
            )
        detail = {
            role: {"port": port, "listening": port in bound} for role, port in ports.items()
        }
        missing = [f"{role}={port}" for role, port in ports.items() if port not in bound]
        if missing:
            return HealthCheckResult(
                id="ports",
                status=HealthStatus.FAIL,
                message=f"No listener on {', '.join(missing)}.",
                data=detail,
            )
        listed = ", ".join(f"{role}={port}" for role, port in ports.items())
        return HealthCheckResult(
            id="ports",
            status=HealthStatus.PASS,
            message=f"Listening on {listed}.",
            data=detail,
        )

    def check_log(self) -> HealthCheckResult:
        """Surface the tail of the newest server log."""
        log_dir = self.config.server_log_dir
        if not log_dir.is_dir():
            return HealthCheckResult(
                id="log",
                status=HealthStatus.INFO,
                message=f"No server log directory yet ({log_dir}).",
            )
        latest = _latest_log(log_dir)
        if latest is None:
            return HealthCheckResult(
                id="log",
                status=HealthStatus.INFO,
                message=f"No server log files in {log_dir}.",
            )
        try:
            text = latest.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            return HealthCheckResult(
                id="log",
                status=HealthStatus.WARN,
                message=f"Unable to read {latest.name}: {exc}",
                data={"path": str(latest)},
            )
        tail = text.splitlines()[-self.config.lifecycle.log_tail_lines :]
        lines = tuple(LogLine(text=line, tier=classify_log_line(line)) for line in tail)
        return HealthCheckResult(
            id="log",
            status=HealthStatus.PASS,
            message=f"Showing last {len(lines)} lines of {latest.name}.",
            data={"path": str(latest)},
            lines=lines,
        )


def _latest_log(log_dir: Path) -> Path | None:
    candidates: list[tuple[float, Path]] = []
    for path in log_dir.glob("*.log"):
        try:
            candidates.append((path.stat().st_mtime, path))
        except OSError:
            continue
    if not candidates:
        return None
    return max(candidates)[1]


def _run_single_check(check: HealthCheckDefinition) -> HealthCheckResult:
    start = time.perf_counter()
    try:
        result = check.run()
    except Exception as exc:  # noqa: BLE001 - one broken check must not hide the others
        return HealthCheckResult(
            id=check.id,
            status=HealthStatus.FAIL,
            message=f"Check '{check.id}' raised an unexpected error: {exc}",
            data={"exception": repr(exc), "traceback": traceback.format_exc()},
            duration_ms=_duration_ms(start),
        )
    if result.id != check.id:
        result = replace(result, id=check.id)
    if result.duration_ms is None:
        result = replace(result, duration_ms=_duration_ms(start))
    return result


__all__ = [
    "HealthCheckDefinition",
    "HealthCheckFailed",
    "HealthCheckResult",
    "HealthEvaluator",
    "HealthReport",
    "HealthStatus",
    "LogLine",
    "LogTier",
    "classify_log_line",
    "listening_ports",
]
