"""Typer-powered command line interface for ``gsmctl``.

Each command loads the configuration fresh, rediscovers the server process
and runs one lifecycle operation to completion. Human-readable status lines
go to standard output; structured entries go to the daily management log.
"""
from __future__ import annotations

import textwrap
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backups import ArchiveCreationFailed, BackupManager, list_archives, parse_archive_timestamp
from .config import ConfigError, LifecycleConfig, load_config
from .exit_codes import ExitCode
from .fetcher import FetchFailed, SteamCMDFetcher
from .health import HealthEvaluator, HealthReport, HealthStatus, LogTier
from .locking import LockError, LockHandle, LockManager
from .logging import OperationScope, StructuredLogger
from .orchestrator import UpdateOrchestrator, UpdateReport
from .process import (
    ExecutableNotFound,
    ProcessControlError,
    ProcessController,
    ServerState,
    StartFailed,
    StopOutcome,
)

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    "-c",
    dir_okay=False,
    help="Override the path to gsmctl's configuration file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)

_HEALTH_STATUS_STYLE = {
    HealthStatus.PASS: "[green]PASS[/green]",
    HealthStatus.FAIL: "[red]FAIL[/red]",
    HealthStatus.WARN: "[yellow]WARN[/yellow]",
    HealthStatus.INFO: "[cyan]INFO[/cyan]",
}
_LOG_TIER_STYLE = {
    LogTier.ERROR: "red",
    LogTier.WARN: "yellow",
    LogTier.SUCCESS: "green",
    LogTier.NEUTRAL: "dim",
}
_STOP_MESSAGES = {
    StopOutcome.NOT_RUNNING: "[yellow]Server was not running.[/yellow]",
    StopOutcome.GRACEFUL: "[green]Server stopped gracefully.[/green]",
    StopOutcome.FORCED_KILL: "[yellow]Server did not exit in time; forced kill succeeded.[/yellow]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Game server lifecycle manager.

        Start, stop, update, back up and health-check a single dedicated
        game server installed through SteamCMD.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the management configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: LifecycleConfig
    logger: StructuredLogger
    locks: LockManager
    controller: ProcessController
    fetcher: SteamCMDFetcher
    backups: BackupManager
    evaluator: HealthEvaluator


def _build_runtime(config: LifecycleConfig) -> RuntimeContext:
    logger = StructuredLogger(
        config.log_dir,
        level=config.logging.level,
        enabled=config.logging.enabled,
    )
    controller = ProcessController(
        executable_name=config.server.executable,
        poll_interval=config.lifecycle.poll_interval_seconds,
    )
    return RuntimeContext(
        config=config,
        logger=logger,
        locks=LockManager(config.paths.lock_file, config.lifecycle.lock_timeout_seconds),
        controller=controller,
        fetcher=SteamCMDFetcher(config.paths.steamcmd),
        backups=BackupManager(config, logger=logger),
        evaluator=HealthEvaluator(config, controller),
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]FAILED[/red] {escape(type(exc).__name__)}: {escape(str(exc))}")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = _build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the gsmctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"gsmctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
) -> NoReturn:
    """Emit a failure line, record it and terminate the command."""
    console.print(f"[red]FAILED[/red] {escape(message)}")
    op.error(message)
    raise typer.Exit(code=int(rc))


def _command_warning(op: OperationScope, message: str) -> None:
    console.print(f"[yellow]WARNING[/yellow] {escape(message)}")
    op.warning(message)


@contextmanager
def _lifecycle_lock(
    runtime: RuntimeContext,
    op: OperationScope,
    operation: str,
) -> Iterator[LockHandle]:
    try:
        with runtime.locks.server_lock(operation) as handle:
            op.add_step("lock", status="success", detail=f"{handle.wait_ms}ms")
            yield handle
    except LockError as exc:
        _command_error(op, str(exc), rc=ExitCode.LOCKED)


def _launch(runtime: RuntimeContext, op: OperationScope, grace: float) -> None:
    config = runtime.config
    try:
        handle, spawned = runtime.controller.launch(
            config.executable_path,
            config.install_dir,
            grace,
        )
    except ExecutableNotFound as exc:
        _command_error(op, f"ExecutableNotFound: {exc}")
    except StartFailed as exc:
        _command_error(op, f"StartFailed: {exc} Operator intervention required.")
    except ProcessControlError as exc:
        _command_error(op, f"StartFailed: {exc}")
    if spawned:
        console.print(f"[green]Server started (pid {handle.pid}).[/green]")
        op.success(f"Server started (pid {handle.pid}).")
    else:
        console.print(f"[yellow]Server already running (pid {handle.pid}).[/yellow]")
        op.success(f"Server already running (pid {handle.pid}); nothing to do.")


def _stop(runtime: RuntimeContext, op: OperationScope, timeout: float) -> StopOutcome:
    try:
        outcome = runtime.controller.ensure_stopped(timeout_seconds=timeout)
    except ProcessControlError as exc:
        _command_error(op, f"StopFailed: {exc}")
    op.add_step("stop", status="success", detail=outcome.value)
    console.print(_STOP_MESSAGES[outcome])
    return outcome


@app.command()
def start(
    ctx: typer.Context,
    grace: float | None = typer.Option(
        None,
        "--grace",
        min=0,
        help="Seconds to wait before confirming the server is alive.",
    ),
) -> None:
    """Start the server and confirm it is alive after the grace period."""
    runtime = _get_runtime(ctx)
    effective_grace = runtime.config.lifecycle.start_grace_seconds if grace is None else grace
    with runtime.logger.operation("start", args={"grace": effective_grace}) as op:
        with _lifecycle_lock(runtime, op, "start"):
            _launch(runtime, op, effective_grace)


@app.command()
def stop(
    ctx: typer.Context,
    timeout: int | None = typer.Option(
        None,
        "--timeout",
        min=1,
        help="Seconds to wait for a graceful exit before killing the server.",
    ),
) -> None:
    """Stop the server, escalating to a forced kill after the timeout."""
    runtime = _get_runtime(ctx)
    effective_timeout = (
        runtime.config.lifecycle.stop_timeout_seconds if timeout is None else float(timeout)
    )
    with runtime.logger.operation("stop", args={"timeout": effective_timeout}) as op:
        with _lifecycle_lock(runtime, op, "stop"):
            outcome = _stop(runtime, op, effective_timeout)
            op.success(f"Stop finished: {outcome.value}.")


@app.command()
def restart(
    ctx: typer.Context,
    timeout: int | None = typer.Option(
        None,
        "--timeout",
        min=1,
        help="Seconds to wait for a graceful exit before killing the server.",
    ),
) -> None:
    """Stop the server (if running) and start it again."""
    runtime = _get_runtime(ctx)
    lifecycle = runtime.config.lifecycle
    effective_timeout = lifecycle.stop_timeout_seconds if timeout is None else float(timeout)
    with runtime.logger.operation("restart", args={"timeout": effective_timeout}) as op:
        with _lifecycle_lock(runtime, op, "restart"):
            _stop(runtime, op, effective_timeout)
            _launch(runtime, op, lifecycle.start_grace_seconds)


@app.command()
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report whether the server process is running."""
    runtime = _get_runtime(ctx)
    handle = runtime.controller.find_running()
    payload: dict[str, object] = {
        "server": runtime.config.server.name,
        "state": (ServerState.STOPPED if handle is None else ServerState.RUNNING).value,
        "pid": handle.pid if handle else None,
        "started_at": handle.started_at.isoformat(timespec="seconds") if handle else None,
    }
    if json_output:
        console.print_json(data=payload)
        return
    if handle is None:
        console.print(f"[yellow]{escape(runtime.config.server.name)}: stopped[/yellow]")
    else:
        console.print(
            f"[green]{escape(runtime.config.server.name)}: running[/green] "
            f"(pid {handle.pid}, since {payload['started_at']})"
        )


def _render_update_report(report: UpdateReport) -> None:
    for outcome in report.outcomes:
        if outcome.ok:
            label = "[green]OK[/green]"
        elif outcome.step is report.aborted_at:
            label = "[red]FAILED[/red]"
        else:
            label = "[yellow]WARNING[/yellow]"
        console.print(f"{label} {outcome.step.value}: {escape(outcome.message)}")


@app.command()
def update(
    ctx: typer.Context,
    no_validate: bool = typer.Option(
        False,
        "--no-validate",
        help="Skip SteamCMD file validation during the update.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Stop, fetch the latest binaries, start and verify the server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("update", args={"validate": not no_validate}) as op:
        with _lifecycle_lock(runtime, op, "update"):
            orchestrator = UpdateOrchestrator(
                runtime.config,
                runtime.controller,
                runtime.fetcher,
                runtime.evaluator,
                validate=not no_validate,
            )
            report = orchestrator.run(op)
            if json_output:
                console.print_json(data=report.to_dict())
            else:
                _render_update_report(report)
            if not report.succeeded:
                step = report.aborted_at.value if report.aborted_at else "unknown"
                _command_error(op, f"Update aborted at {step}.")
            if report.warnings:
                op.success(f"Update completed with {len(report.warnings)} warning(s).")
            else:
                op.success("Update completed.")
            console.print("[green]Update completed.[/green]")


@app.command()
def backup(
    ctx: typer.Context,
    no_rotate: bool = typer.Option(
        False,
        "--no-rotate",
        help="Create the archive without applying the retention policy.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Archive the server install directory and rotate old backups."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("backup", args={"rotate": not no_rotate}) as op:
        with _lifecycle_lock(runtime, op, "backup"):
            try:
                archive = runtime.backups.create_backup()
            except ArchiveCreationFailed as exc:
                _command_error(op, f"ArchiveCreationFailed: {exc}")
            op.add_step("backup.archive", status="success", detail=str(archive.path))

            payload: dict[str, object] = {"archive": archive.to_dict()}
            if not no_rotate:
                rotation = runtime.backups.rotate()
                payload["rotation"] = rotation.to_dict()
                for error in rotation.errors:
                    _command_warning(op, f"RotationFileError: {error}")
                op.add_step(
                    "backup.rotate",
                    status="warning" if rotation.errors else "success",
                    detail=f"kept={len(rotation.kept)} deleted={len(rotation.deleted)}",
                )

            if json_output:
                console.print_json(data=payload)
            else:
                ratio = archive.compression_ratio
                ratio_text = f"{ratio:.1%}" if ratio is not None else "n/a"
                console.print(
                    f"[green]Backup created:[/green] {escape(str(archive.path))} "
                    f"({archive.file_count} files, {archive.size_bytes} bytes, "
                    f"ratio {ratio_text}, {archive.duration_seconds:.1f}s)"
                )
                if not no_rotate:
                    console.print(
                        f"Retention: kept {len(rotation.kept)}, deleted {len(rotation.deleted)}."
                    )
            op.success(f"Backup {archive.path.name} created.")


@app.command()
def rotate(ctx: typer.Context) -> None:
    """Apply the retention policy to the backup directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("rotate") as op:
        with _lifecycle_lock(runtime, op, "rotate"):
            report = runtime.backups.rotate()
            for error in report.errors:
                _command_warning(op, f"RotationFileError: {error}")
            console.print(f"Retention: kept {len(report.kept)}, deleted {len(report.deleted)}.")
            op.success("Rotation finished.")


@app.command("list-backups")
def list_backups(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List backup archives, newest first."""
    runtime = _get_runtime(ctx)
    prefix = runtime.config.backup.prefix
    archives = list_archives(runtime.config.backup_dir, prefix)
    rows: list[dict[str, object]] = []
    for path in archives:
        created = parse_archive_timestamp(path, prefix)
        try:
            size_bytes = path.stat().st_size
        except OSError:
            # Removed by a concurrent rotation.
            continue
        rows.append(
            {
                "name": path.name,
                "created_at": created.isoformat(sep=" ") if created else None,
                "size_bytes": size_bytes,
            }
        )
    if json_output:
        console.print_json(data={"backups": rows})
        return
    if not rows:
        console.print("No backups found.")
        return
    table = Table(title=f"Backups ({len(rows)}/{runtime.config.backup.retention_count} retained)")
    table.add_column("Archive")
    table.add_column("Created")
    table.add_column("Size", justify="right")
    for row in rows:
        table.add_row(str(row["name"]), str(row["created_at"]), str(row["size_bytes"]))
    console.print(table)


def _render_health_report(report: HealthReport) -> None:
    for result in report.results:
        label = _HEALTH_STATUS_STYLE[result.status]
        console.print(f"{label} {result.id}: {escape(result.message)}")
        for line in result.lines:
            style = _LOG_TIER_STYLE[line.tier]
            console.print(f"    [{style}]{escape(line.text)}[/{style}]")
    if report.healthy:
        console.print("[green]Server healthy.[/green]")
    elif not report.running:
        console.print("[red]Server unhealthy (not running).[/red]")
    else:
        console.print("[red]Server unhealthy.[/red]")


@app.command("health-check")
def health_check(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Run the process, port and log checks."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("health-check") as op:
        report = runtime.evaluator.run()
        for result in report.results:
            level = {
                HealthStatus.PASS: "success",
                HealthStatus.FAIL: "error",
                HealthStatus.WARN: "warning",
            }.get(result.status, "info")
            op.add_step(f"check.{result.id}", status=level, detail=result.message)
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            _render_health_report(report)
        if not report.healthy:
            failed = ", ".join(result.id for result in report.failures)
            op.error(f"HealthCheckFailed: {failed}")
            raise typer.Exit(code=ExitCode.FAILURE)
        op.success("Server healthy.")


@app.command("install-dependencies")
def install_dependencies(
    ctx: typer.Context,
    steamcmd_url: str | None = typer.Option(
        None,
        "--steamcmd-url",
        help="Override the SteamCMD download URL.",
    ),
) -> None:
    """Install SteamCMD and create the managed directories."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation("install-dependencies") as op:
        directories: Sequence[Path] = (config.install_dir, config.backup_dir, config.log_dir)
        for directory in directories:
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                _command_error(op, f"Unable to create {directory}: {exc}")
            op.add_step("mkdir", status="success", detail=str(directory))
        try:
            binary = runtime.fetcher.ensure_installed(steamcmd_url)
        except FetchFailed as exc:
            _command_error(op, f"FetchFailed: {exc}")
        op.add_step("steamcmd", status="success", detail=str(binary))
        console.print(f"[green]SteamCMD ready:[/green] {escape(str(binary))}")
        op.success("Dependencies installed.")


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the resolved configuration (password redacted)."""
    runtime = _get_runtime(ctx)
    payload = runtime.config.to_dict()
    if json_output:
        console.print_json(data=payload)
        return
    for section, values in payload.items():
        if not isinstance(values, dict):
            console.print(f"[bold]{escape(section)}[/bold]: {escape(str(values))}")
            continue
        console.print(f"[bold]{escape(section)}[/bold]")
        for key, value in values.items():
            console.print(f"  {escape(key)}: {escape(str(value))}")


def main() -> None:  # pragma: no cover - console script entry point
    """Invoke the Typer application."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
