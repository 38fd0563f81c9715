"""SteamCMD package fetcher for the server binaries."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import tarfile
import tempfile
import urllib.request
import zipfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

STEAMCMD_WINDOWS_URL = "https://steamcdn-a.akamaihd.net/client/installer/steamcmd.zip"
STEAMCMD_LINUX_URL = "https://steamcdn-a.akamaihd.net/client/installer/steamcmd_linux.tar.gz"
STEAMCMD_BINARIES = ("steamcmd.exe", "steamcmd.sh", "steamcmd")
# SteamCMD exits with 7 on its first run while it bootstraps its own config.
BOOTSTRAP_EXIT_CODE = 7


class FetchFailed(RuntimeError):
    """Raised when SteamCMD cannot be located, installed or executed."""


@dataclass(frozen=True, slots=True)
class FetchResult:
    """Outcome of a SteamCMD ``app_update`` run."""

    returncode: int
    output: str
    attempts: int = 1

    @property
    def ok(self) -> bool:
        """Return ``True`` when SteamCMD reported success."""
        return self.returncode == 0


class SteamCMDFetcher:
    """Install and update server files through SteamCMD."""

    def __init__(
        self,
        steamcmd_dir: Path,
    ) -> None:
        """Initialise the fetcher with the SteamCMD directory."""
        self.steamcmd_dir = steamcmd_dir.expanduser()

    def binary(self) -> Path | None:
        """Return the SteamCMD binary when installed."""
        for name in STEAMCMD_BINARIES:
            candidate = self.steamcmd_dir / name
            if candidate.is_file():
                return candidate
        return None

    def fetch(
        self,
        install_dir: Path,
        app_id: int,
        *,
        validate: bool = True,
    ) -> FetchResult:
        """Run ``app_update`` for *app_id* into *install_dir*."""
        steamcmd = self.binary()
        if steamcmd is None:
            raise FetchFailed(f"SteamCMD not found in {self.steamcmd_dir}.")

        cmd = [
            str(steamcmd),
            "+@ShutdownOnFailedCommand",
            "1",
            "+@NoPromptForPassword",
            "1",
            "+force_install_dir",
            str(install_dir),
            "+login",
            "anonymous",
            "+app_update",
            str(app_id),
        ]
        if validate:
            cmd.append("validate")
        cmd.append("+quit")

        try:
            install_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FetchFailed(f"Unable to prepare install directory {install_dir}: {exc}") from exc

        attempts = 1
        result = self._run_fetch_command(cmd)
        output = f"{result.stdout or ''}{result.stderr or ''}"
        if result.returncode == BOOTSTRAP_EXIT_CODE or "Missing configuration" in output:
            LOGGER.debug("SteamCMD bootstrap detected; retrying app_update once")
            attempts += 1
            result = self._run_fetch_command(cmd)
            output = f"{result.stdout or ''}{result.stderr or ''}"
        return FetchResult(returncode=result.returncode, output=output, attempts=attempts)

    def ensure_installed(self, download_url: str | None = None) -> Path:
        """Download and unpack SteamCMD when it is not present yet."""
        existing = self.binary()
        if existing is not None:
            return existing

        url = download_url or (
            STEAMCMD_WINDOWS_URL if sys.platform == "win32" else STEAMCMD_LINUX_URL
        )
        self.steamcmd_dir.mkdir(parents=True, exist_ok=True)
        staging_dir = Path(tempfile.mkdtemp(prefix=".gsmctl-steamcmd-", dir=str(self.steamcmd_dir)))
        try:
            archive_path = staging_dir / Path(url).name
            self._download(url, archive_path)
            self._extract(archive_path, self.steamcmd_dir)
        except (OSError, tarfile.TarError, zipfile.BadZipFile) as exc:
            raise FetchFailed(f"Failed to install SteamCMD from {url}: {exc}") from exc
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

        installed = self.binary()
        if installed is None:
            raise FetchFailed(f"SteamCMD binary missing after extraction into {self.steamcmd_dir}.")
        return installed

    def _run_fetch_command(
        self,
        cmd: Sequence[str],
    ) -> subprocess.CompletedProcess[str]:
        """Execute SteamCMD (isolated for testing)."""
        try:
            return subprocess.run(  # noqa: S603
                list(cmd),
                check=False,
                capture_output=True,
                text=True,
                cwd=str(self.steamcmd_dir),
            )
        except OSError as exc:
            raise FetchFailed(f"Unable to execute {cmd[0]}: {exc}") from exc

    def _download(self, url: str, destination: Path) -> None:
        """Download *url* to *destination* (isolated for testing)."""
        with urllib.request.urlopen(url, timeout=60) as response:  # noqa: S310
            with destination.open("wb") as handle:
                shutil.copyfileobj(response, handle)

    @staticmethod
    def _extract(archive_path: Path, target: Path) -> None:
        if archive_path.name.endswith(".zip"):
            with zipfile.ZipFile(archive_path) as archive:
                archive.extractall(target)
            return
        with tarfile.open(archive_path, "r:*") as archive:
            archive.extractall(target, filter="data")


__all__ = ["FetchFailed", "FetchResult", "SteamCMDFetcher"]
