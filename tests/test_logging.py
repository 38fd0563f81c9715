"""Tests for the structured management log."""
from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path

import pytest

from gsmctl.logging import StructuredLogger

LINE_PATTERN = re.compile(r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] \[(\S+)\] \[(\w+)\] (.*)$")


def _entries(logger: StructuredLogger) -> list[tuple[str, str, str]]:
    lines = logger.log_path().read_text(encoding="utf-8").splitlines()
    entries = []
    for line in lines:
        match = LINE_PATTERN.match(line)
        assert match is not None, line
        entries.append((match.group(1), match.group(2), match.group(3)))
    return entries


def test_daily_file_and_line_format(tmp_path: Path) -> None:
    """Entries land in gsmctl-YYYY-MM-DD.log with component and level tags."""
    logger = StructuredLogger(tmp_path / "logs")

    logger.info("hello", component="backup")
    logger.success("done")

    expected = tmp_path / "logs" / f"gsmctl-{datetime.now():%Y-%m-%d}.log"
    assert logger.log_path() == expected
    assert _entries(logger) == [
        ("backup", "INFO", "hello"),
        ("gsmctl", "SUCCESS", "done"),
    ]


def test_level_threshold_filters_lower_entries(tmp_path: Path) -> None:
    """Entries below the configured level are skipped."""
    logger = StructuredLogger(tmp_path / "logs", level="WARN")

    logger.info("quiet")
    logger.success("also quiet")
    logger.warning("loud")
    logger.error("louder")

    assert [entry[1] for entry in _entries(logger)] == ["WARN", "ERROR"]


def test_disabled_logger_writes_nothing(tmp_path: Path) -> None:
    """Logging.Enabled=false suppresses the file entirely."""
    logger = StructuredLogger(tmp_path / "logs", enabled=False)

    logger.error("nope")

    assert not logger.enabled
    assert not (tmp_path / "logs").exists()


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.success("done")


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    log_path = logger.log_path()

    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == log_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("demo") as op:
        op.success("done")

    assert logger._enabled is False  # type: ignore[attr-defined]

    # Subsequent operations should not raise even though logger is disabled.
    with logger.operation("demo-2") as op:
        op.success("done")


def test_operation_records_steps_and_outcome(tmp_path: Path) -> None:
    """Operation scopes bracket the work with start and finish entries."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("update", args={"validate": True}) as op:
        op.add_step("fetch-package", status="warning", detail="SteamCMD exited 8")
        op.success("Update completed.")

    entries = _entries(logger)
    assert entries[0] == ("update", "INFO", "Operation started. validate=True")
    assert ("update", "WARN", "fetch-package warning: SteamCMD exited 8") in entries
    assert ("update", "SUCCESS", "Update completed.") in entries
    assert entries[-1][2].startswith("Operation succeeded in ")
    assert op.steps == [
        {"name": "fetch-package", "status": "warning", "detail": "SteamCMD exited 8"}
    ]


def test_operation_logs_error_and_reraises(tmp_path: Path) -> None:
    """Unhandled exceptions are recorded before propagating."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("backup"):
            raise ValueError("boom")

    entries = _entries(logger)
    assert ("backup", "ERROR", "Operation aborted: boom") in entries
    assert entries[-1][2].startswith("Operation failed in ")
