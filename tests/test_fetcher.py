"""Tests for the SteamCMD fetcher."""
from __future__ import annotations

import io
import subprocess
import tarfile
from collections.abc import Sequence
from pathlib import Path

import pytest

from gsmctl.fetcher import FetchFailed, SteamCMDFetcher


def _completed(returncode: int, stdout: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr="")


@pytest.fixture
def steamcmd_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "steamcmd"
    directory.mkdir()
    (directory / "steamcmd.sh").write_text("#!/bin/sh\n", encoding="utf-8")
    return directory


def _record_runs(
    monkeypatch: pytest.MonkeyPatch,
    fetcher: SteamCMDFetcher,
    results: list[subprocess.CompletedProcess[str]],
) -> list[list[str]]:
    calls: list[list[str]] = []

    def fake_run(cmd: Sequence[str]) -> subprocess.CompletedProcess[str]:
        calls.append(list(cmd))
        return results.pop(0)

    monkeypatch.setattr(fetcher, "_run_fetch_command", fake_run)
    return calls


def test_fetch_builds_anonymous_app_update_command(
    tmp_path: Path, steamcmd_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """The fetch runs an anonymous, validated app_update into the install dir."""
    fetcher = SteamCMDFetcher(steamcmd_dir)
    calls = _record_runs(
        monkeypatch, fetcher, [_completed(0, "Success! App '2278520' fully installed.")]
    )
    install_dir = tmp_path / "server"

    result = fetcher.fetch(install_dir, 2278520)

    assert result.ok
    assert result.attempts == 1
    assert install_dir.is_dir()
    assert calls == [
        [
            str(steamcmd_dir / "steamcmd.sh"),
            "+@ShutdownOnFailedCommand",
            "1",
            "+@NoPromptForPassword",
            "1",
            "+force_install_dir",
            str(install_dir),
            "+login",
            "anonymous",
            "+app_update",
            "2278520",
            "validate",
            "+quit",
        ]
    ]


def test_fetch_without_validation(
    tmp_path: Path, steamcmd_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    fetcher = SteamCMDFetcher(steamcmd_dir)
    calls = _record_runs(monkeypatch, fetcher, [_completed(0)])

    fetcher.fetch(tmp_path / "server", 2278520, validate=False)

    assert "validate" not in calls[0]


def test_fetch_retries_once_on_bootstrap_exit_code(
    tmp_path: Path, steamcmd_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """SteamCMD's first-run exit code 7 triggers exactly one retry."""
    fetcher = SteamCMDFetcher(steamcmd_dir)
    calls = _record_runs(monkeypatch, fetcher, [_completed(7), _completed(0)])

    result = fetcher.fetch(tmp_path / "server", 2278520)

    assert result.ok
    assert result.attempts == 2
    assert len(calls) == 2


def test_fetch_reports_nonzero_exit(
    tmp_path: Path, steamcmd_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Other failures are returned, not retried and not raised."""
    fetcher = SteamCMDFetcher(steamcmd_dir)
    calls = _record_runs(monkeypatch, fetcher, [_completed(8, "ERROR! Timeout")])

    result = fetcher.fetch(tmp_path / "server", 2278520)

    assert not result.ok
    assert result.returncode == 8
    assert "Timeout" in result.output
    assert len(calls) == 1


def test_fetch_without_steamcmd_raises(tmp_path: Path) -> None:
    fetcher = SteamCMDFetcher(tmp_path / "missing")

    with pytest.raises(FetchFailed):
        fetcher.fetch(tmp_path / "server", 2278520)


def test_fetch_with_unusable_install_dir_raises(
    tmp_path: Path, steamcmd_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """An install path below a regular file is reported as FetchFailed."""
    fetcher = SteamCMDFetcher(steamcmd_dir)
    calls = _record_runs(monkeypatch, fetcher, [_completed(0)])
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")

    with pytest.raises(FetchFailed, match="install directory"):
        fetcher.fetch(blocker / "server", 2278520)

    assert calls == []


def test_ensure_installed_returns_existing_binary(steamcmd_dir: Path) -> None:
    fetcher = SteamCMDFetcher(steamcmd_dir)

    assert fetcher.ensure_installed() == steamcmd_dir / "steamcmd.sh"


def test_ensure_installed_downloads_and_extracts(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A missing SteamCMD is downloaded and unpacked into its directory."""
    target = tmp_path / "steamcmd"
    fetcher = SteamCMDFetcher(target)

    def fake_download(url: str, destination: Path) -> None:
        payload = b"#!/bin/sh\n"
        with tarfile.open(destination, "w:gz") as archive:
            info = tarfile.TarInfo("steamcmd.sh")
            info.size = len(payload)
            archive.addfile(info, io.BytesIO(payload))

    monkeypatch.setattr(fetcher, "_download", fake_download)

    binary = fetcher.ensure_installed("https://example.invalid/steamcmd_linux.tar.gz")

    assert binary == target / "steamcmd.sh"
    assert [path.name for path in target.iterdir()] == ["steamcmd.sh"]


def test_ensure_installed_wraps_download_errors(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    fetcher = SteamCMDFetcher(tmp_path / "steamcmd")

    def failing_download(url: str, destination: Path) -> None:
        raise OSError("network unreachable")

    monkeypatch.setattr(fetcher, "_download", failing_download)

    with pytest.raises(FetchFailed, match="network unreachable"):
        fetcher.ensure_installed("https://example.invalid/steamcmd_linux.tar.gz")
