"""Structured management logging for gsmctl.

Entries are appended to one file per calendar day under the management log
directory (``gsmctl-YYYY-MM-DD.log``) using the line format::

    [2026-10-19 04:00:01] [backup] [SUCCESS] Backup archive created.

The logger never raises: when the directory cannot be created or a write
fails it disables itself so lifecycle operations keep running.
"""
from __future__ import annotations

import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

LEVEL_ORDER: dict[str, int] = {
    "INFO": 10,
    "SUCCESS": 20,
    "WARN": 30,
    "ERROR": 40,
}


def _format_value(value: object) -> str:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, tuple, set)):
        return ",".join(_format_value(item) for item in value)
    return str(value)


class StructuredLogger:
    """Append ``[timestamp] [component] [level] message`` lines to a daily file."""

    def __init__(
        self,
        log_dir: Path,
        *,
        component: str = "gsmctl",
        level: str = "INFO",
        enabled: bool = True,
    ) -> None:
        """Prepare the log directory; disable the logger when it is unusable."""
        self.log_dir = log_dir.expanduser()
        self.component = component
        self.threshold = LEVEL_ORDER.get(level.upper(), LEVEL_ORDER["INFO"])
        self._enabled = enabled
        if self._enabled:
            try:
                self.log_dir.mkdir(parents=True, exist_ok=True)
            except OSError:
                self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return ``True`` while entries are being written."""
        return self._enabled

    def log_path(self, when: datetime | None = None) -> Path:
        """Return the daily log file for *when* (defaults to today)."""
        stamp = (when or datetime.now()).strftime("%Y-%m-%d")
        return self.log_dir / f"gsmctl-{stamp}.log"

    def log(self, level: str, message: str, *, component: str | None = None) -> None:
        """Append *message* at *level* when the logger is enabled and above threshold."""
        normalized = level.upper()
        if normalized not in LEVEL_ORDER:
            normalized = "INFO"
        if not self._enabled or LEVEL_ORDER[normalized] < self.threshold:
            return
        now = datetime.now()
        line = (
            f"[{now.strftime('%Y-%m-%d %H:%M:%S')}] "
            f"[{component or self.component}] [{normalized}] {message}\n"
        )
        try:
            with self.log_path(now).open("a", encoding="utf-8") as handle:
                handle.write(line)
        except OSError:
            self._enabled = False

    def info(self, message: str, *, component: str | None = None) -> None:
        """Record an informational entry."""
        self.log("INFO", message, component=component)

    def success(self, message: str, *, component: str | None = None) -> None:
        """Record a success entry."""
        self.log("SUCCESS", message, component=component)

    def warning(self, message: str, *, component: str | None = None) -> None:
        """Record a warning entry."""
        self.log("WARN", message, component=component)

    def error(self, message: str, *, component: str | None = None) -> None:
        """Record an error entry."""
        self.log("ERROR", message, component=component)

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Bracket a lifecycle operation with start/finish entries."""
        scope = OperationScope(logger=self, name=name)
        details = ""
        if args:
            details = " " + " ".join(
                f"{key}={_format_value(value)}" for key, value in args.items()
            )
        self.info(f"Operation started.{details}", component=name)
        try:
            yield scope
        except Exception as exc:
            if scope.status is None:
                scope.error(f"Operation aborted: {exc}")
            raise
        finally:
            elapsed_ms = int((time.perf_counter() - scope.started) * 1000)
            status = scope.status or "finished"
            self.info(f"Operation {status} in {elapsed_ms} ms.", component=name)


@dataclass
class OperationScope:
    """Per-operation helper that tags entries with the operation name."""

    logger: StructuredLogger
    name: str
    started: float = field(default_factory=time.perf_counter)
    status: str | None = None
    steps: list[dict[str, str]] = field(default_factory=list)

    def add_step(self, step: str, *, status: str, detail: str | None = None) -> None:
        """Record an intermediate step outcome."""
        self.steps.append({"name": step, "status": status, "detail": detail or ""})
        suffix = f": {detail}" if detail else ""
        level = {"error": "ERROR", "warning": "WARN", "success": "SUCCESS"}.get(status, "INFO")
        self.logger.log(level, f"{step} {status}{suffix}", component=self.name)

    def info(self, message: str) -> None:
        """Record an informational entry for this operation."""
        self.logger.info(message, component=self.name)

    def success(self, message: str) -> None:
        """Mark the operation successful."""
        self.status = "succeeded"
        self.logger.success(message, component=self.name)

    def warning(self, message: str) -> None:
        """Record a non-fatal problem; the operation continues."""
        self.logger.warning(message, component=self.name)

    def error(self, message: str) -> None:
        """Mark the operation failed."""
        self.status = "failed"
        self.logger.error(message, component=self.name)


__all__ = ["LEVEL_ORDER", "OperationScope", "StructuredLogger"]
