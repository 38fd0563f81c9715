"""Backup creation and retention for the server install directory."""
from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .archive import ArchiveError, compute_checksum, create_zip_archive
from .config import LifecycleConfig
from .logging import StructuredLogger

LOGGER = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d_%H%M%S"
DEFAULT_PREFIX = "ServerBackup"


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class ArchiveCreationFailed(BackupError):
    """Raised when a backup archive could not be produced."""


class RotationFileError(BackupError):
    """A single archive could not be removed during rotation."""

    def __init__(self, path: Path, reason: BaseException) -> None:
        """Record the archive that could not be deleted and why."""
        super().__init__(f"Failed to delete {path}: {reason}")
        self.path = path
        self.reason = reason


@dataclass(frozen=True, slots=True)
class BackupArchive:
    """One rotation unit in the backup directory."""

    path: Path
    created_at: datetime
    size_bytes: int
    file_count: int
    source_bytes: int = 0
    duration_seconds: float = 0.0
    checksum: str | None = None

    @property
    def compression_ratio(self) -> float | None:
        """Return archive size divided by source size (``None`` for empty sources)."""
        if self.source_bytes <= 0:
            return None
        return self.size_bytes / self.source_bytes

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "path": str(self.path),
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "size_bytes": self.size_bytes,
            "file_count": self.file_count,
            "source_bytes": self.source_bytes,
            "duration_seconds": round(self.duration_seconds, 3),
            "compression_ratio": self.compression_ratio,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
        }


@dataclass(slots=True)
class RotationReport:
    """Outcome of applying the retention policy."""

    kept: list[Path] = field(default_factory=list)
    deleted: list[Path] = field(default_factory=list)
    errors: list[RotationFileError] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "kept": [str(path) for path in self.kept],
            "deleted": [str(path) for path in self.deleted],
            "errors": [str(error) for error in self.errors],
        }


def archive_name(prefix: str, timestamp: datetime) -> str:
    """Return ``<prefix>-<YYYY-MM-DD_HHMMSS>.zip`` for *timestamp*."""
    return f"{prefix}-{timestamp.strftime(TIMESTAMP_FORMAT)}.zip"


def _archive_pattern(prefix: str) -> re.Pattern[str]:
    return re.compile(rf"^{re.escape(prefix)}-(\d{{4}}-\d{{2}}-\d{{2}}_\d{{6}})\.zip$")


def parse_archive_timestamp(path: Path, prefix: str = DEFAULT_PREFIX) -> datetime | None:
    """Return the creation timestamp embedded in an archive name."""
    match = _archive_pattern(prefix).match(path.name)
    if match is None:
        return None
    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
    except ValueError:
        return None


def list_archives(backup_dir: Path, prefix: str = DEFAULT_PREFIX) -> list[Path]:
    """Return archives matching the naming pattern, newest first."""
    if not backup_dir.is_dir():
        return []
    entries: list[tuple[datetime, float, str, Path]] = []
    for path in backup_dir.iterdir():
        timestamp = parse_archive_timestamp(path, prefix)
        if timestamp is None or not path.is_file():
            continue
        try:
            mtime = path.stat().st_mtime
        except OSError:
            mtime = 0.0
        entries.append((timestamp, mtime, path.name, path))
    entries.sort(reverse=True)
    return [entry[3] for entry in entries]


def _normalise(path: Path | str) -> str:
    return os.path.normcase(os.path.abspath(os.fspath(path)))


def is_excluded(path: Path | str, prefixes: Iterable[Path | str]) -> bool:
    """Return ``True`` when *path* equals or lives under one of *prefixes*.

    The match is directory-aware: ``/srv/Backups`` excludes
    ``/srv/Backups/a.zip`` but not ``/srv/Backups-extra/a.zip``.
    """
    candidate = _normalise(path)
    for prefix in prefixes:
        root = _normalise(prefix)
        if candidate == root:
            return True
        boundary = root if root.endswith(os.sep) else root + os.sep
        if candidate.startswith(boundary):
            return True
    return False


def collect_files(install_dir: Path, exclusions: Sequence[Path]) -> list[Path]:
    """Return regular files under *install_dir* that are not excluded, sorted."""
    collected: list[Path] = []
    for current, dirnames, filenames in os.walk(install_dir):
        dirnames[:] = sorted(
            name for name in dirnames if not is_excluded(Path(current, name), exclusions)
        )
        for name in sorted(filenames):
            path = Path(current, name)
            if path.is_symlink() or not path.is_file():
                continue
            if is_excluded(path, exclusions):
                continue
            collected.append(path)
    return collected


def rotate(
    backup_dir: Path,
    retention_count: int,
    *,
    prefix: str = DEFAULT_PREFIX,
    logger: StructuredLogger | None = None,
) -> RotationReport:
    """Delete archives beyond the newest *retention_count*; per-file errors are kept."""
    if retention_count < 1:
        raise BackupError("Retention count must be at least 1.")
    archives = list_archives(backup_dir, prefix)
    report = RotationReport(kept=archives[:retention_count])
    for path in archives[retention_count:]:
        try:
            path.unlink()
        except FileNotFoundError:
            report.deleted.append(path)
            continue
        except OSError as exc:
            error = RotationFileError(path, exc)
            report.errors.append(error)
            if logger is not None:
                logger.warning(str(error), component="backup")
            LOGGER.debug("Rotation skipped %s: %s", path, exc)
            continue
        report.deleted.append(path)
        if logger is not None:
            logger.info(f"Retention: deleted {path.name}", component="backup")
    return report


class BackupManager:
    """Snapshot the install directory and enforce the retention policy."""

    def __init__(
        self,
        config: LifecycleConfig,
        *,
        logger: StructuredLogger | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Bind the manager to a configuration snapshot."""
        self.config = config
        self.logger = logger
        self.clock = clock

    @property
    def exclusions(self) -> list[Path]:
        """Return directories never included in an archive."""
        return [self.config.backup_dir, self.config.server_log_dir, self.config.log_dir]

    def create_backup(self) -> BackupArchive:
        """Archive every eligible install file into a new timestamped zip."""
        install_dir = Path(_normalise(self.config.install_dir))
        if not install_dir.is_dir():
            raise ArchiveCreationFailed(f"Install directory not found: {install_dir}")

        files = collect_files(install_dir, self.exclusions)
        try:
            source_bytes = sum(path.stat().st_size for path in files)
        except OSError as exc:
            raise ArchiveCreationFailed(f"Failed to inspect source files: {exc}") from exc

        backup_dir = self.config.backup_dir
        created_at = self.clock().replace(microsecond=0)
        archive_path = backup_dir / archive_name(self.config.backup.prefix, created_at)
        partial_path = backup_dir / f".{archive_path.name}.partial"
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ArchiveCreationFailed(
                f"Failed to prepare backup directory {backup_dir}: {exc}"
            ) from exc
        if archive_path.exists():
            raise ArchiveCreationFailed(f"Backup archive already exists: {archive_path}")

        try:
            stats = create_zip_archive(files, install_dir, partial_path)
            checksum = compute_checksum(partial_path)
            os.replace(partial_path, archive_path)
        except (ArchiveError, OSError) as exc:
            partial_path.unlink(missing_ok=True)
            raise ArchiveCreationFailed(str(exc)) from exc

        archive = BackupArchive(
            path=archive_path,
            created_at=created_at,
            size_bytes=stats.size_bytes,
            file_count=stats.file_count,
            source_bytes=source_bytes,
            duration_seconds=stats.duration_seconds,
            checksum=checksum,
        )
        if self.logger is not None:
            ratio = archive.compression_ratio
            ratio_text = f"{ratio:.1%}" if ratio is not None else "n/a"
            self.logger.success(
                f"Created {archive_path.name}: {archive.file_count} files, "
                f"{archive.size_bytes} bytes (ratio {ratio_text}) "
                f"in {archive.duration_seconds:.1f}s",
                component="backup",
            )
        return archive

    def rotate(self) -> RotationReport:
        """Apply the configured retention count to the backup directory."""
        return rotate(
            self.config.backup_dir,
            self.config.backup.retention_count,
            prefix=self.config.backup.prefix,
            logger=self.logger,
        )

    def run(self) -> tuple[BackupArchive, RotationReport]:
        """Create a backup, then rotate; rotation never runs after a failed backup."""
        archive = self.create_backup()
        return archive, self.rotate()


__all__ = [
    "ArchiveCreationFailed",
    "BackupArchive",
    "BackupError",
    "BackupManager",
    "RotationFileError",
    "RotationReport",
    "archive_name",
    "collect_files",
    "is_excluded",
    "list_archives",
    "parse_archive_timestamp",
    "rotate",
]
