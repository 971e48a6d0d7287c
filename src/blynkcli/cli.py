"""Typer-powered command line interface for ``blynkcli``.

Two command groups are exposed: top-level commands managing the CLI itself
(``setup``, ``remove``, ``version``, ``self-update``) and the ``server``
group driving the Blynk server lifecycle and its backups. Every command runs
inside a structured operation scope so the outcome lands in
``operations.jsonl`` as well as on the console.
"""
from __future__ import annotations

import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backups import (
    AmbiguousBackupMatch,
    BackupError,
    BackupManager,
    BackupStore,
)
from .bootstrap import CliShim, ServiceAccountError, ShimError
from .bootstrap.shim import SelfUpdatePlan, apply_self_update
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .providers import (
    ProcessError,
    ReleaseError,
    ReleaseProvider,
    SubprocessSupervisor,
)
from .server import ServerError, ServerManager
from .state import StateRegistry, StateRegistryError

console = Console()

HANDLED_ERRORS: tuple[type[Exception], ...] = (
    ServerError,
    BackupError,
    ReleaseError,
    ProcessError,
    ServiceAccountError,
    ShimError,
    LockTimeoutError,
    StateRegistryError,
    OSError,
)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to blynkcli's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit structured JSON instead of human-readable output.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Blynk CLI.

        A short utility to install, run, update and back up a Blynk server.
        Run `blynkcli setup` once to put the `blynkcli` command on your PATH.
        """
    ).strip(),
)
server_app = typer.Typer(help="Install, run, update and back up the Blynk server.")
app.add_typer(server_app, name="server")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    releases: ReleaseProvider
    server: ServerManager
    backups: BackupManager
    shim: CliShim


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc

    registry = StateRegistry(config.state_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    releases = ReleaseProvider(
        api_url=config.releases.api_url,
        timeout=config.releases.timeout,
        retries=config.releases.retries,
    )
    server = ServerManager(
        config=config,
        registry=registry,
        supervisor=SubprocessSupervisor(),
        releases=releases,
        locks=locks,
    )
    backups = BackupManager(store=BackupStore(config.backups.root), server=server)
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        locks=locks,
        logger=logger,
        releases=releases,
        server=server,
        backups=backups,
        shim=CliShim(config.executable),
    )
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
        help="Show the blynkcli version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"v{__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


@server_app.callback(invoke_without_command=True)
def _server_root(ctx: typer.Context) -> None:
    """Manage the Blynk server."""
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _info(message: str) -> None:
    console.print(f"[green]\\[INFO][/green]    {message}")


def _warning(message: str) -> None:
    console.print(f"[yellow]\\[WARNING][/yellow] {message}")


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: list[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]\\[ERROR][/red]   {escape(message)}")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


# ----------------------------------------------------------------------
# CLI self-management
# ----------------------------------------------------------------------
@app.command()
def setup(ctx: typer.Context) -> None:
    """Install the `blynkcli` command system-wide."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "setup",
        target={"kind": "cli", "path": str(runtime.shim.executable)},
    ) as op:
        _info("Installing Blynk CLI")
        try:
            path = runtime.shim.install()
        except ShimError as exc:
            _command_error(op, str(exc))
        op.add_step("shim.install", detail=str(path))
        _info("Installation complete")
        _info("Use `blynkcli` to get help.")
        op.success("Installed CLI shim.", changed=1)


@app.command()
def remove(ctx: typer.Context) -> None:
    """Uninstall the system-wide `blynkcli` command."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "remove",
        target={"kind": "cli", "path": str(runtime.shim.executable)},
    ) as op:
        try:
            path = runtime.shim.remove()
        except ShimError as exc:
            _command_error(op, str(exc))
        op.add_step("shim.remove", detail=str(path))
        _info(f"Removed {path}")
        op.success("Removed CLI shim.", changed=1)


@app.command()
def version(ctx: typer.Context) -> None:
    """Print the version of blynkcli."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("version", target={"kind": "meta"}) as op:
        console.print(f"v{__version__}")
        op.success("Reported CLI version.", changed=0)


@app.command("self-update")
def self_update(ctx: typer.Context) -> None:
    """Check whether a newer blynkcli release exists and install it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("self-update", target={"kind": "cli"}) as op:
        _info("Checking for a Blynk CLI update")
        try:
            release = runtime.releases.latest(runtime.config.releases.cli_repo)
        except ReleaseError as exc:
            _command_error(op, str(exc))
        plan = SelfUpdatePlan(
            current=__version__,
            latest=release.tag,
            source=release.tarball_url,
        )
        op.add_step("release.latest", detail=release.tag)
        if not plan.available:
            _warning("No update available.")
            op.warning("No update available.", context={"latest": release.tag})
            return
        _info(f"New version available. Updating to {release.tag}")
        try:
            apply_self_update(plan)
        except ShimError as exc:
            _command_error(op, str(exc))
        op.add_step("pip.install", detail=plan.source)
        _info("Update complete.")
        op.success("Updated blynkcli.", changed=1, context={"version": release.tag})


# ----------------------------------------------------------------------
# Server lifecycle
# ----------------------------------------------------------------------
@server_app.command("install")
def server_install(ctx: typer.Context) -> None:
    """Install the latest Blynk server release."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("server install", target={"kind": "server"}) as op:
        _info("Installing Blynk server")
        try:
            record = runtime.server.install()
        except HANDLED_ERRORS as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.server.last_lock_wait_ms)
        op.add_step("release.download", detail=str(record.artifact))
        op.add_step("state.write", detail=str(runtime.config.state_file))
        _info(f"Downloaded server release {record.release}: {record.artifact.name}")
        _info("Blynk successfully installed")
        op.success("Server installed.", changed=1, context=record.to_dict())


@server_app.command("uninstall")
def server_uninstall(ctx: typer.Context) -> None:
    """Stop the server and remove everything that install created."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("server uninstall", target={"kind": "server"}) as op:
        _info("Uninstalling Blynk server")
        try:
            removed = runtime.server.uninstall()
        except HANDLED_ERRORS as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.server.last_lock_wait_ms)
        for path in removed:
            op.add_step("remove", detail=str(path))
        _info("Blynk server uninstalled")
        op.success("Server uninstalled.", changed=len(removed))


@server_app.command("start")
def server_start(ctx: typer.Context) -> None:
    """Start the Blynk server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("server start", target={"kind": "server"}) as op:
        _info("Starting server")
        try:
            pid = runtime.server.start()
        except HANDLED_ERRORS as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.server.last_lock_wait_ms)
        op.add_step("process.spawn", detail=f"pid={pid}")
        _info(f"Server started (pid {pid})")
        op.success("Server started.", changed=1, context={"pid": pid})


@server_app.command("stop")
def server_stop(ctx: typer.Context) -> None:
    """Stop the Blynk server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("server stop", target={"kind": "server"}) as op:
        _info("Stopping server")
        try:
            pid = runtime.server.stop()
        except HANDLED_ERRORS as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.server.last_lock_wait_ms)
        op.add_step("process.terminate", detail=f"pid={pid}")
        _info("Server stopped")
        op.success("Server stopped.", changed=1, context={"pid": pid})


@server_app.command("restart")
def server_restart(ctx: typer.Context) -> None:
    """Restart the Blynk server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("server restart", target={"kind": "server"}) as op:
        try:
            result = runtime.server.restart()
        except HANDLED_ERRORS as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.server.last_lock_wait_ms)
        if result.stopped_pid is None:
            _warning("Server was already offline")
            op.add_step("process.terminate", status="skipped", detail="already stopped")
        else:
            op.add_step("process.terminate", detail=f"pid={result.stopped_pid}")
        op.add_step("process.spawn", detail=f"pid={result.pid}")
        _info(f"Server restarted (pid {result.pid})")
        op.success("Server restarted.", changed=2, context={"pid": result.pid})


@server_app.command("status")
def server_status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Print whether the server is online or offline."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server status",
        args={"json": json_output},
        target={"kind": "server"},
    ) as op:
        try:
            status = runtime.server.status()
        except HANDLED_ERRORS as exc:
            _command_error(op, str(exc))
        if json_output:
            console.print_json(data=status.to_dict())
        elif status.online:
            _info(f"Server is [green]online[/green] (pid {status.pid})")
        else:
            _info("Server is [red]offline[/red]")
            if not status.installed:
                _warning("Server is not installed.")
        op.success("Reported server status.", changed=0, context=status.to_dict())


@server_app.command("update")
def server_update(ctx: typer.Context) -> None:
    """Update the server to the latest release available."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("server update", target={"kind": "server"}) as op:
        _info("Checking for Blynk server update")
        try:
            result = runtime.server.update()
        except HANDLED_ERRORS as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.server.last_lock_wait_ms)
        context = {"artifact": str(result.artifact), "release": result.release}
        if not result.updated:
            _warning("No update available for Blynk server")
            op.warning("No update available.", context=context)
            return
        op.add_step("release.download", detail=str(result.artifact))
        if result.previous is not None:
            op.add_step("artifact.remove", detail=str(result.previous))
        _info(f"Updated to {result.release} ({result.artifact.name})")
        _info("Update complete.")
        op.success("Server updated.", changed=2, context=context)


# ----------------------------------------------------------------------
# Backups
# ----------------------------------------------------------------------
@server_app.command("backup")
def server_backup(
    ctx: typer.Context,
    name: str | None = typer.Argument(
        None,
        help="Backup name (letters, digits and hyphens). Prompted for when omitted.",
    ),
) -> None:
    """Make a backup of the server's data folder."""
    runtime = _get_runtime(ctx)
    if name is None and sys.stdin.isatty():
        answer = typer.prompt("Enter the backup name", default="", show_default=False)
        name = answer.strip() or None
    with runtime.logger.operation(
        "server backup",
        args={"name": name},
        target={"kind": "backup"},
    ) as op:
        _info("Backing up data folder")
        try:
            entry = runtime.backups.backup(name)
        except HANDLED_ERRORS as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.server.last_lock_wait_ms)
        op.add_step("backup.copy", detail=str(entry.path))
        _info(f"Backup {entry.label or entry.name} saved as {entry.path}")
        op.success("Backup created.", changed=1, backups=[entry.name])


@server_app.command("restore")
def server_restore(
    ctx: typer.Context,
    identifier: str | None = typer.Argument(
        None,
        help="Backup name, or its full timestamped directory name.",
    ),
) -> None:
    """Restore the server's data folder from a backup."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server restore",
        args={"identifier": identifier},
        target={"kind": "backup"},
    ) as op:
        if not identifier:
            _command_error(
                op,
                "You must provide the name of a backup. Examples: "
                "blynkcli server restore my-backup-name, "
                "blynkcli server restore my-backup-name_2017-05-16_00-30-54",
            )
        try:
            result = runtime.backups.restore(identifier)
        except AmbiguousBackupMatch as exc:
            _command_error(op, str(exc), errors=exc.matches)
        except HANDLED_ERRORS as exc:
            _command_error(op, str(exc))
        op.set_lock_wait_ms(runtime.server.last_lock_wait_ms)
        if result.stopped_pid is not None:
            op.add_step("process.terminate", detail=f"pid={result.stopped_pid}")
        op.add_step("backup.restore", detail=f"{result.entry.path} -> {result.destination}")
        op.add_step("process.spawn", detail=f"pid={result.pid}")
        _info(f"Restored from backup {result.entry.path}")
        op.success("Backup restored.", changed=2, backups=[result.entry.name])


@server_app.command("backups")
def server_backups(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List the available backups, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server backups",
        args={"json": json_output},
        target={"kind": "backup"},
    ) as op:
        try:
            entries = runtime.backups.list_backups()
        except HANDLED_ERRORS as exc:
            _command_error(op, str(exc))
        if json_output:
            console.print_json(data={"backups": [entry.to_dict() for entry in entries]})
        elif not entries:
            _info("No backups found.")
        else:
            table = Table("Name", "Label", "Created", "Size (bytes)")
            for entry in entries:
                created = entry.created_at.isoformat(sep=" ") if entry.created_at else "-"
                table.add_row(entry.name, entry.label or "-", created, str(entry.size_bytes()))
            console.print(table)
        op.success("Listed backups.", changed=0, context={"count": len(entries)})


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
