"""Tests for the health evaluator."""
from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path

import psutil
import pytest

from gsmctl.config import LifecycleConfig
from gsmctl.health import (
    HealthCheckFailed,
    HealthEvaluator,
    HealthStatus,
    LogTier,
    classify_log_line,
)
from gsmctl.process import ServerProcessHandle


class StubController:
    def __init__(self, pid: int | None) -> None:
        self.pid = pid

    def find_running(self) -> ServerProcessHandle | None:
        if self.pid is None:
            return None
        return ServerProcessHandle(pid=self.pid, started_at=datetime(2026, 10, 19, tzinfo=UTC))


def _evaluator(
    config: LifecycleConfig,
    *,
    pid: int | None = 1234,
    ports: set[int] | None = None,
) -> HealthEvaluator:
    bound = {15636, 15637} if ports is None else ports
    return HealthEvaluator(
        config,
        StubController(pid),  # type: ignore[arg-type]
        port_scanner=lambda: set(bound),
    )


def _write_server_log(config: LifecycleConfig, name: str, lines: list[str]) -> Path:
    log_dir = config.server_log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_dir / name
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.mark.parametrize(
    ("line", "tier"),
    [
        ("[Session] Exception while loading world", LogTier.ERROR),
        ("Connection FAILED for player", LogTier.ERROR),
        ("[Warning] slow tick", LogTier.WARN),
        ("[Session] 'HostOnline' (up)! Server started", LogTier.SUCCESS),
        ("Server is ready", LogTier.SUCCESS),
        ("Loading chunk 12", LogTier.NEUTRAL),
    ],
)
def test_classify_log_line(line: str, tier: LogTier) -> None:
    assert classify_log_line(line) is tier


def test_not_running_without_logs_is_unhealthy(lifecycle_config: LifecycleConfig) -> None:
    """Every check still runs when the server is down and has never logged."""
    report = _evaluator(lifecycle_config, pid=None, ports=set()).run()

    assert [result.id for result in report.results] == ["process", "ports", "log"]
    assert report.get("process").status is HealthStatus.FAIL  # type: ignore[union-attr]
    assert report.get("log").status is HealthStatus.INFO  # type: ignore[union-attr]
    assert report.healthy is False
    assert report.running is False
    with pytest.raises(HealthCheckFailed):
        report.raise_for_status()


def test_running_with_missing_port_reports_both(lifecycle_config: LifecycleConfig) -> None:
    """A running process with an unbound port yields a port FAIL alongside process PASS."""
    report = _evaluator(lifecycle_config, ports={15636}).run()

    assert report.get("process").status is HealthStatus.PASS  # type: ignore[union-attr]
    ports = report.get("ports")
    assert ports is not None
    assert ports.status is HealthStatus.FAIL
    assert "query=15637" in ports.message
    assert ports.data == {
        "game": {"port": 15636, "listening": True},
        "query": {"port": 15637, "listening": False},
    }
    assert report.running is True
    assert report.healthy is False


def test_healthy_server_shows_latest_log_tail(lifecycle_config: LifecycleConfig) -> None:
    """The newest log file is tailed and its lines are tiered."""
    old = _write_server_log(lifecycle_config, "old.log", ["error from yesterday"])
    os.utime(old, (1_000_000, 1_000_000))
    lines = [f"line {index}" for index in range(40)] + ["Server started"]
    _write_server_log(lifecycle_config, "enshrouded_server.log", lines)

    report = _evaluator(lifecycle_config).run()

    assert report.healthy is True
    log = report.get("log")
    assert log is not None
    assert log.status is HealthStatus.PASS
    assert len(log.lines) == lifecycle_config.lifecycle.log_tail_lines
    assert log.lines[-1].text == "Server started"
    assert log.lines[-1].tier is LogTier.SUCCESS
    assert log.lines[0].tier is LogTier.NEUTRAL


def test_log_dir_without_log_files_is_info(lifecycle_config: LifecycleConfig) -> None:
    lifecycle_config.server_log_dir.mkdir(parents=True)

    log = _evaluator(lifecycle_config).check_log()

    assert log.status is HealthStatus.INFO


def test_socket_table_access_denied_fails_ports(lifecycle_config: LifecycleConfig) -> None:
    def denied() -> set[int]:
        raise psutil.AccessDenied()

    evaluator = HealthEvaluator(
        lifecycle_config,
        StubController(1234),  # type: ignore[arg-type]
        port_scanner=denied,
    )

    result = evaluator.check_ports()

    assert result.status is HealthStatus.FAIL


def test_crashing_check_becomes_failure(
    lifecycle_config: LifecycleConfig,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A check that raises is reported as FAIL while the others still run."""
    evaluator = _evaluator(lifecycle_config)

    def explode() -> None:
        raise RuntimeError("kaboom")

    monkeypatch.setattr(evaluator, "check_process", explode)

    report = evaluator.run()

    process = report.get("process")
    assert process is not None
    assert process.status is HealthStatus.FAIL
    assert "kaboom" in process.message
    assert report.get("ports").status is HealthStatus.PASS  # type: ignore[union-attr]
    payload = report.to_dict()
    assert payload["healthy"] is False
