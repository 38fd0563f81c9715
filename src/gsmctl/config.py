"""Configuration loader for gsmctl.

This module centralises the logic for reading the management configuration
from multiple sources:

1. Built-in defaults for optional sections and keys.
2. ``/etc/gsmctl/config.json`` (or an override path).
3. Environment variables prefixed with ``GSMCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export GSMCTL_SERVER__GAMEPORT=16636
    export GSMCTL_BACKUP__RETENTIONCOUNT=10

Section and key names match case-insensitively, so ``SERVER__GAMEPORT``
targets ``Server.GamePort``. The document itself is parsed with PyYAML's
``safe_load``, which accepts the JSON documents written by the reference
deployment as well as YAML. The resulting configuration is exposed as
immutable ``dataclasses`` and is validated before any lifecycle action runs.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load gsmctl configuration. Install with "
        "`pip install gsmctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "GSMCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
DEFAULT_CONFIG_FILE = "/etc/gsmctl/config.json"

ALLOWED_LOG_LEVELS = ("INFO", "WARN", "ERROR", "SUCCESS")
MAX_PORT = 65535
SLOT_RANGE = (1, 16)
RETENTION_RANGE = (1, 100)


class ConfigError(RuntimeError):
    """Raised when configuration loading fails."""


class ConfigNotFound(ConfigError):
    """Raised when the configuration file does not exist."""


class ConfigMalformed(ConfigError):
    """Raised when the configuration cannot be parsed or fails validation."""


@dataclass(frozen=True)
class PathsConfig:
    """Filesystem locations used by the lifecycle operations."""

    steamcmd: Path
    server_install: Path
    backup: Path
    management_logs: Path
    lock_file: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "SteamCMD": str(self.steamcmd),
            "ServerInstall": str(self.server_install),
            "Backup": str(self.backup),
            "ManagementLogs": str(self.management_logs),
            "LockFile": str(self.lock_file),
        }


@dataclass(frozen=True)
class VMConfig:
    """Hosting VM metadata (informational only)."""

    name: str = ""
    host_powershell_remoting_enabled: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "Name": self.name,
            "HostPowerShellRemotingEnabled": self.host_powershell_remoting_enabled,
        }


@dataclass(frozen=True)
class ServerConfig:
    """Identity and network settings of the managed game server."""

    name: str
    password: str
    slot_count: int
    game_port: int
    query_port: int
    executable: str = "enshrouded_server.exe"
    app_id: int = 2278520
    ip: str = "0.0.0.0"
    save_directory: str = "./savegame"
    log_directory: str = "./logs"

    @property
    def ports(self) -> dict[str, int]:
        """Return the configured ports keyed by role."""
        return {"game": self.game_port, "query": self.query_port}

    def to_dict(self, *, redact: bool = True) -> dict[str, object]:
        """Return a serialisable representation (password redacted by default)."""
        password = "********" if redact and self.password else self.password
        return {
            "Name": self.name,
            "Password": password,
            "SlotCount": self.slot_count,
            "GamePort": self.game_port,
            "QueryPort": self.query_port,
            "Executable": self.executable,
            "AppId": self.app_id,
            "Ip": self.ip,
            "SaveDirectory": self.save_directory,
            "LogDirectory": self.log_directory,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup naming and retention settings."""

    retention_count: int
    prefix: str = "ServerBackup"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"RetentionCount": self.retention_count, "Prefix": self.prefix}


@dataclass(frozen=True)
class LoggingConfig:
    """Management log settings."""

    enabled: bool = True
    level: str = "INFO"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"Enabled": self.enabled, "Level": self.level}


@dataclass(frozen=True)
class LifecycleTimings:
    """Polling and timeout tunables for lifecycle operations."""

    start_grace_seconds: float = 10.0
    stop_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 1.0
    lock_timeout_seconds: float = 30.0
    log_tail_lines: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "StartGraceSeconds": self.start_grace_seconds,
            "StopTimeoutSeconds": self.stop_timeout_seconds,
            "PollIntervalSeconds": self.poll_interval_seconds,
            "LockTimeoutSeconds": self.lock_timeout_seconds,
            "LogTailLines": self.log_tail_lines,
        }


@dataclass(frozen=True)
class LifecycleConfig:
    """Resolved, validated configuration snapshot for one invocation."""

    config_file: Path
    paths: PathsConfig
    vm: VMConfig
    server: ServerConfig
    backup: BackupConfig
    logging: LoggingConfig
    lifecycle: LifecycleTimings

    @property
    def install_dir(self) -> Path:
        """Return the server installation directory."""
        return self.paths.server_install

    @property
    def backup_dir(self) -> Path:
        """Return the backup destination directory."""
        return self.paths.backup

    @property
    def log_dir(self) -> Path:
        """Return the management log directory."""
        return self.paths.management_logs

    @property
    def server_log_dir(self) -> Path:
        """Return the directory the server writes its own logs into."""
        return _resolve_under(self.paths.server_install, self.server.log_directory)

    @property
    def executable_path(self) -> Path:
        """Return the absolute path to the server executable."""
        return self.paths.server_install / self.server.executable

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "Paths": self.paths.to_dict(),
            "VM": self.vm.to_dict(),
            "Server": self.server.to_dict(),
            "Backup": self.backup.to_dict(),
            "Logging": self.logging.to_dict(),
            "Lifecycle": self.lifecycle.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "VM": {
        "Name": "",
        "HostPowerShellRemotingEnabled": False,
    },
    "Server": {
        "Password": "",
        "Executable": "enshrouded_server.exe",
        "AppId": 2278520,
        "Ip": "0.0.0.0",
        "SaveDirectory": "./savegame",
        "LogDirectory": "./logs",
    },
    "Backup": {
        "Prefix": "ServerBackup",
    },
    "Logging": {
        "Enabled": True,
        "Level": "INFO",
    },
    "Lifecycle": {
        "StartGraceSeconds": 10,
        "StopTimeoutSeconds": 30,
        "PollIntervalSeconds": 1,
        "LockTimeoutSeconds": 30,
        "LogTailLines": 30,
    },
}

ALLOWED_KEYS: dict[str, set[str]] = {
    "Paths": {"SteamCMD", "ServerInstall", "Backup", "ManagementLogs", "LockFile"},
    "VM": {"Name", "HostPowerShellRemotingEnabled"},
    "Server": {
        "Name",
        "Password",
        "SlotCount",
        "GamePort",
        "QueryPort",
        "Executable",
        "AppId",
        "Ip",
        "SaveDirectory",
        "LogDirectory",
    },
    "Backup": {"RetentionCount", "Prefix"},
    "Logging": {"Enabled", "Level"},
    "Lifecycle": {
        "StartGraceSeconds",
        "StopTimeoutSeconds",
        "PollIntervalSeconds",
        "LockTimeoutSeconds",
        "LogTailLines",
    },
}

REQUIRED_KEYS: dict[str, tuple[str, ...]] = {
    "Paths": ("SteamCMD", "ServerInstall", "Backup", "ManagementLogs"),
    "Server": ("Name", "SlotCount", "GamePort", "QueryPort"),
    "Backup": ("RetentionCount",),
    "VM": (),
    "Logging": (),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> LifecycleConfig:
    """Load, merge and validate configuration sources into a :class:`LifecycleConfig`."""
    resolved_env = dict(os.environ if env is None else env)
    config_path = _determine_config_path(config_file, resolved_env)

    file_values = _load_document(config_path)
    _check_required_sections(file_values, config_path)

    merged: dict[str, object] = _deep_copy(DEFAULTS)
    _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    _validate_structure(merged)
    return _build_lifecycle_config(config_path, merged)


def _determine_config_path(
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(DEFAULT_CONFIG_FILE)


def _load_document(path: Path) -> dict[str, object]:
    if not path.exists():
        raise ConfigNotFound(f"Configuration file not found: {path}")
    try:
        text = path.read_text(encoding="utf-8-sig")
    except OSError as exc:
        raise ConfigMalformed(f"Unable to read config file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigMalformed(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigMalformed(f"Config file {path} must contain a mapping at the top level.")
    return _canonicalise(_as_dict(data, f"file:{path}"))


def _canonicalise(document: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in document.items():
        section = _canonical_name(key, ALLOWED_KEYS) or key
        if section in ALLOWED_KEYS and isinstance(value, Mapping):
            options = _as_dict(value, section)
            result[section] = {
                _canonical_name(option, ALLOWED_KEYS[section]) or option: item
                for option, item in options.items()
            }
        else:
            result[section] = value
    return result


def _check_required_sections(raw: Mapping[str, object], path: Path) -> None:
    for section, keys in REQUIRED_KEYS.items():
        section_key = _match_key(raw, section)
        if section_key is None:
            raise ConfigMalformed(f"Config file {path} is missing required section '{section}'.")
        mapping = _as_dict(raw[section_key], section)
        missing = [key for key in keys if _match_key(mapping, key) is None]
        if missing:
            joined = ", ".join(f"{section}.{key}" for key in missing)
            raise ConfigMalformed(f"Config file {path} is missing required keys: {joined}.")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_sections = set(raw.keys()) - set(ALLOWED_KEYS)
    if unknown_sections:
        joined = ", ".join(sorted(unknown_sections))
        raise ConfigMalformed(f"Unknown configuration sections: {joined}.")

    for section, allowed in ALLOWED_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigMalformed(f"Unknown {section} configuration keys: {joined}.")


def _build_lifecycle_config(config_path: Path, raw: Mapping[str, object]) -> LifecycleConfig:
    paths_map = _as_dict(raw.get("Paths"), "Paths")
    management_logs = _to_path(paths_map.get("ManagementLogs"), "Paths.ManagementLogs")
    lock_value = paths_map.get("LockFile")
    paths = PathsConfig(
        steamcmd=_to_path(paths_map.get("SteamCMD"), "Paths.SteamCMD"),
        server_install=_to_path(paths_map.get("ServerInstall"), "Paths.ServerInstall"),
        backup=_to_path(paths_map.get("Backup"), "Paths.Backup"),
        management_logs=management_logs,
        lock_file=(
            _to_path(lock_value, "Paths.LockFile")
            if lock_value
            else management_logs / "gsmctl.lock"
        ),
    )

    vm_map = _as_dict(raw.get("VM"), "VM")
    vm = VMConfig(
        name=_expect_str(vm_map.get("Name"), "VM.Name", default=""),
        host_powershell_remoting_enabled=_expect_bool(
            vm_map.get("HostPowerShellRemotingEnabled"),
            "VM.HostPowerShellRemotingEnabled",
            default=False,
        ),
    )

    server_map = _as_dict(raw.get("Server"), "Server")
    game_port = _expect_int(server_map.get("GamePort"), "Server.GamePort")
    query_port = _expect_int(server_map.get("QueryPort"), "Server.QueryPort")
    for label, port in (("Server.GamePort", game_port), ("Server.QueryPort", query_port)):
        if not 0 < port <= MAX_PORT:
            raise ConfigMalformed(f"{label} must be between 1 and {MAX_PORT}. Got {port}.")
    if game_port == query_port:
        raise ConfigMalformed(
            f"Server.GamePort and Server.QueryPort must differ (both are {game_port})."
        )
    slot_count = _expect_int(server_map.get("SlotCount"), "Server.SlotCount")
    _expect_range(slot_count, SLOT_RANGE, "Server.SlotCount")
    name = _expect_str(server_map.get("Name"), "Server.Name").strip()
    if not name:
        raise ConfigMalformed("Server.Name must be a non-empty string.")
    executable = _expect_str(server_map.get("Executable"), "Server.Executable").strip()
    if not executable:
        raise ConfigMalformed("Server.Executable must be a non-empty string.")
    server = ServerConfig(
        name=name,
        password=_expect_str(server_map.get("Password"), "Server.Password", default=""),
        slot_count=slot_count,
        game_port=game_port,
        query_port=query_port,
        executable=executable,
        app_id=_expect_int(server_map.get("AppId"), "Server.AppId"),
        ip=_expect_str(server_map.get("Ip"), "Server.Ip"),
        save_directory=_expect_str(server_map.get("SaveDirectory"), "Server.SaveDirectory"),
        log_directory=_expect_str(server_map.get("LogDirectory"), "Server.LogDirectory"),
    )

    backup_map = _as_dict(raw.get("Backup"), "Backup")
    retention = _expect_int(backup_map.get("RetentionCount"), "Backup.RetentionCount")
    _expect_range(retention, RETENTION_RANGE, "Backup.RetentionCount")
    prefix = _expect_str(backup_map.get("Prefix"), "Backup.Prefix").strip()
    if not prefix or any(char in prefix for char in "/\\"):
        raise ConfigMalformed("Backup.Prefix must be a non-empty name without separators.")
    backup = BackupConfig(retention_count=retention, prefix=prefix)

    logging_map = _as_dict(raw.get("Logging"), "Logging")
    level = _expect_str(logging_map.get("Level"), "Logging.Level").strip().upper()
    if level not in ALLOWED_LOG_LEVELS:
        allowed = ", ".join(ALLOWED_LOG_LEVELS)
        raise ConfigMalformed(f"Unsupported Logging.Level '{level}'. Allowed: {allowed}.")
    logging_config = LoggingConfig(
        enabled=_expect_bool(logging_map.get("Enabled"), "Logging.Enabled", default=True),
        level=level,
    )

    lifecycle_map = _as_dict(raw.get("Lifecycle"), "Lifecycle")
    tail_lines = _expect_int(lifecycle_map.get("LogTailLines"), "Lifecycle.LogTailLines")
    if tail_lines <= 0:
        raise ConfigMalformed("Lifecycle.LogTailLines must be greater than zero.")
    lifecycle = LifecycleTimings(
        start_grace_seconds=_expect_positive_float(
            lifecycle_map.get("StartGraceSeconds"), "Lifecycle.StartGraceSeconds"
        ),
        stop_timeout_seconds=_expect_positive_float(
            lifecycle_map.get("StopTimeoutSeconds"), "Lifecycle.StopTimeoutSeconds"
        ),
        poll_interval_seconds=_expect_positive_float(
            lifecycle_map.get("PollIntervalSeconds"), "Lifecycle.PollIntervalSeconds"
        ),
        lock_timeout_seconds=_expect_positive_float(
            lifecycle_map.get("LockTimeoutSeconds"), "Lifecycle.LockTimeoutSeconds"
        ),
        log_tail_lines=tail_lines,
    )

    return LifecycleConfig(
        config_file=config_path,
        paths=paths,
        vm=vm,
        server=server,
        backup=backup,
        logging=logging_config,
        lifecycle=lifecycle,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment for segment in suffix.split("__") if segment]
        if len(path_segments) != 2:
            continue
        section = _canonical_name(path_segments[0], ALLOWED_KEYS)
        if section is None:
            continue
        option = _canonical_name(path_segments[1], ALLOWED_KEYS[section])
        if option is None:
            raise ConfigMalformed(f"Environment override {key} targets an unknown key.")
        _assign_nested(overrides, [section, option], _coerce_value(value))
    return overrides


def _canonical_name(candidate: str, names: Mapping[str, object] | set[str]) -> str | None:
    lowered = candidate.lower()
    for name in names:
        if name.lower() == lowered:
            return name
    return None


def _match_key(mapping: Mapping[str, object], key: str) -> str | None:
    if key in mapping:
        return key
    return _canonical_name(key, set(mapping.keys()))


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigMalformed(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        target_key = _match_key(target, key) or key
        existing = target.get(target_key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[target_key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _resolve_under(root: Path, value: str) -> Path:
    candidate = Path(value).expanduser()
    if candidate.is_absolute():
        return candidate
    return root / candidate


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object, label: str) -> Path:
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str) and value.strip():
        return Path(value.strip()).expanduser()
    raise ConfigMalformed(f"Expected {label} to be a filesystem path. Got {value!r}.")


def _expect_int(value: object | None, label: str) -> int:
    if isinstance(value, bool):
        raise ConfigMalformed(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigMalformed(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigMalformed(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_range(value: int, bounds: tuple[int, int], label: str) -> None:
    low, high = bounds
    if not low <= value <= high:
        raise ConfigMalformed(f"{label} must be between {low} and {high}. Got {value}.")


def _expect_str(value: object | None, label: str, *, default: str | None = None) -> str:
    if value is None and default is not None:
        return default
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    raise ConfigMalformed(f"Expected {label} to be a string. Got {value!r}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    raise ConfigMalformed(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_positive_float(value: object | None, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigMalformed(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigMalformed(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigMalformed(f"Expected {label} to be numeric. Got {type(value).__name__}.")
    if numeric <= 0:
        raise ConfigMalformed(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigMalformed(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigMalformed(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "ALLOWED_LOG_LEVELS",
    "BackupConfig",
    "ConfigError",
    "ConfigMalformed",
    "ConfigNotFound",
    "LifecycleConfig",
    "LifecycleTimings",
    "LoggingConfig",
    "PathsConfig",
    "ServerConfig",
    "VMConfig",
    "load_config",
]
