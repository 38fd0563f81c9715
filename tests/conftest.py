"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from pathlib import Path

import pytest

from gsmctl.config import LifecycleConfig, load_config


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def base_document(root: Path) -> dict[str, object]:
    """Return a complete configuration document rooted at *root*."""
    return {
        "Paths": {
            "SteamCMD": str(root / "steamcmd"),
            "ServerInstall": str(root / "server"),
            "Backup": str(root / "backups"),
            "ManagementLogs": str(root / "mgmt-logs"),
        },
        "VM": {"Name": "game-vm", "HostPowerShellRemotingEnabled": False},
        "Server": {
            "Name": "Test Server",
            "Password": "hunter2",
            "SlotCount": 8,
            "GamePort": 15636,
            "QueryPort": 15637,
        },
        "Backup": {"RetentionCount": 5},
        "Logging": {"Enabled": True, "Level": "INFO"},
        "Lifecycle": {"StartGraceSeconds": 0.01, "PollIntervalSeconds": 0.01},
    }


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[..., Path]:
    """Write a JSON config file (optionally amended) and return its path."""

    def _write(document: dict[str, object] | None = None, *, name: str = "config.json") -> Path:
        path = tmp_path / name
        payload = base_document(tmp_path) if document is None else document
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def lifecycle_config(write_config: Callable[..., Path]) -> LifecycleConfig:
    """Return a loaded configuration rooted in the test's tmp_path."""
    return load_config(config_file=write_config(), env={})
