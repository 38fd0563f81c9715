"""Archive helpers used by the backup workflow."""
from __future__ import annotations

import hashlib
import os
import time
import zipfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


class ArchiveError(RuntimeError):
    """Raised when an archive cannot be written."""


@dataclass(frozen=True, slots=True)
class ArchiveStats:
    """Observable properties of a written archive."""

    path: Path
    size_bytes: int
    file_count: int
    duration_seconds: float


def create_zip_archive(
    files: Sequence[Path],
    root: Path,
    archive_path: Path,
) -> ArchiveStats:
    """Write *files* (stored relative to *root*) into a deflated zip at *archive_path*."""
    start = time.perf_counter()
    try:
        with zipfile.ZipFile(
            archive_path,
            "w",
            compression=zipfile.ZIP_DEFLATED,
        ) as archive:
            for path in files:
                archive.write(path, arcname=path.relative_to(root).as_posix())
    except (OSError, ValueError, zipfile.LargeZipFile) as exc:
        raise ArchiveError(f"Failed to write archive {archive_path}: {exc}") from exc

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass
    return ArchiveStats(
        path=archive_path,
        size_bytes=archive_path.stat().st_size,
        file_count=len(files),
        duration_seconds=time.perf_counter() - start,
    )


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


__all__ = ["ArchiveError", "ArchiveStats", "compute_checksum", "create_zip_archive"]
