"""Render the managed server's own runtime configuration file."""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from .config import LifecycleConfig

SERVER_CONFIG_NAME = "enshrouded_server.json"


class ServerConfigError(RuntimeError):
    """Raised when the server runtime config cannot be written."""


def server_config_path(config: LifecycleConfig) -> Path:
    """Return the location of the server runtime config."""
    return config.install_dir / SERVER_CONFIG_NAME


def render_server_config(config: LifecycleConfig) -> dict[str, object]:
    """Return the managed keys of the server runtime config."""
    server = config.server
    return {
        "name": server.name,
        "password": server.password,
        "saveDirectory": server.save_directory,
        "logDirectory": server.log_directory,
        "ip": server.ip,
        "gamePort": server.game_port,
        "queryPort": server.query_port,
        "slotCount": server.slot_count,
    }


def write_server_config(config: LifecycleConfig) -> bool:
    """Write the runtime config, keeping unmanaged keys; return ``True`` if changed."""
    path = server_config_path(config)
    existing = _read_existing(path)
    payload = dict(existing)
    payload.update(render_server_config(config))
    if payload == existing:
        return False

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    except OSError as exc:
        raise ServerConfigError(f"Failed to prepare {path}: {exc}") from exc
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=4)
            handle.write("\n")
        os.replace(tmp_path, path)
    except OSError as exc:
        raise ServerConfigError(f"Failed to write server config {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


def _read_existing(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ServerConfigError(f"Existing server config {path} is unreadable: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ServerConfigError(f"Existing server config {path} must be a JSON object.")
    return dict(data)


__all__ = [
    "SERVER_CONFIG_NAME",
    "ServerConfigError",
    "render_server_config",
    "server_config_path",
    "write_server_config",
]
