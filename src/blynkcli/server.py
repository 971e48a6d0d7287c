"""Lifecycle management for the Blynk server process.

The manager walks a single server installation through::

    NOT_INSTALLED -> INSTALLED(stopped) <-> INSTALLED(running) -> NOT_INSTALLED

Installation facts live in the :class:`~blynkcli.state.StateRegistry`; the
running process is tracked through a pid file. Every mutating operation runs
under the server lock so two concurrent ``start`` invocations cannot create
two live processes with only one recorded pid.
"""
from __future__ import annotations

import os
import shutil
import signal
import subprocess
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .bootstrap import (
    DirectorySpec,
    ServiceAccountSpec,
    apply_directory_plan,
    apply_service_account_plan,
    hand_over_tree,
    plan_directories,
    plan_service_account,
    resolve_ownership,
)
from .config import AppConfig
from .locking import LockManager
from .providers import PidFile, ProcessError, ProcessSupervisor, ReleaseProvider
from .state import InstallationRecord, StateRegistry

Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


class ServerError(RuntimeError):
    """Base class for lifecycle failures."""


class AlreadyInstalled(ServerError):
    """Raised by install when an artifact is already recorded."""


class NotInstalled(ServerError):
    """Raised when an operation needs an installed server."""


class AlreadyRunning(ServerError):
    """Raised by start when the recorded process is alive."""


class AlreadyStopped(ServerError):
    """Raised by stop when no live process is recorded."""


class StopTimeout(ServerError):
    """Raised when the server outlives the stop signal; the pid file is kept."""


@dataclass(frozen=True, slots=True)
class ServerStatus:
    """Snapshot returned by :meth:`ServerManager.status`."""

    installed: bool
    online: bool
    pid: int | None
    artifact: Path | None
    release: str | None

    @property
    def state(self) -> str:
        """Return ``online`` or ``offline``."""
        return "online" if self.online else "offline"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "state": self.state,
            "installed": self.installed,
            "pid": self.pid,
            "artifact": str(self.artifact) if self.artifact else None,
            "release": self.release,
        }


@dataclass(frozen=True, slots=True)
class UpdateResult:
    """Outcome of :meth:`ServerManager.update`."""

    updated: bool
    artifact: Path
    release: str
    previous: Path | None = None


@dataclass(frozen=True, slots=True)
class RestartResult:
    """Outcome of :meth:`ServerManager.restart`."""

    stopped_pid: int | None
    pid: int


@dataclass(slots=True)
class MaintenanceWindow:
    """State shared with callers of :meth:`ServerManager.maintenance`."""

    stopped_pid: int | None = None
    pid: int | None = None
    lock_wait_ms: int = 0


@dataclass(slots=True)
class ServerManager:
    """Install, run and update one Blynk server installation."""

    config: AppConfig
    registry: StateRegistry
    supervisor: ProcessSupervisor
    releases: ReleaseProvider
    locks: LockManager
    runner: Runner | None = None
    last_lock_wait_ms: int = field(default=0, init=False)

    @property
    def pid_file(self) -> PidFile:
        """Return the pid file handle."""
        return PidFile(self.config.server.pid_file)

    @property
    def account(self) -> ServiceAccountSpec:
        """Return the desired service account."""
        return ServiceAccountSpec.for_service_user(self.config.service_user)

    # ------------------------------------------------------------------
    # Read-only helpers
    # ------------------------------------------------------------------
    def installation(self) -> InstallationRecord | None:
        """Return the record when the recorded artifact exists on disk."""
        record = self.registry.read_installation()
        if record is None or not record.artifact.is_file():
            return None
        return record

    def require_installed(self) -> InstallationRecord:
        """Return the installation record or raise :class:`NotInstalled`."""
        record = self.installation()
        if record is None:
            raise NotInstalled(
                "Server must be installed first. Run `blynkcli server install` first."
            )
        return record

    def running_pid(self) -> int | None:
        """Return the recorded pid when that process is alive."""
        pid = self.pid_file.read()
        if pid is not None and self.supervisor.is_alive(pid):
            return pid
        return None

    def status(self) -> ServerStatus:
        """Report online/offline without touching any state."""
        record = self.registry.read_installation()
        installed = record is not None and record.artifact.is_file()
        pid = self.running_pid()
        return ServerStatus(
            installed=installed,
            online=pid is not None,
            pid=pid,
            artifact=record.artifact if record else None,
            release=record.release if record else None,
        )

    def command(self, record: InstallationRecord) -> list[str]:
        """Return the java command line used to launch the server."""
        server = self.config.server
        return [
            server.java_bin,
            *server.java_options,
            "-jar",
            str(record.artifact),
            "-dataFolder",
            str(server.data_dir),
            "-serverConfig",
            str(server.config_file),
        ]

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------
    def install(self) -> InstallationRecord:
        """Provision the account and directories, download and record the jar."""
        with self._locked():
            if self.installation() is not None:
                raise AlreadyInstalled("Blynk server already installed.")

            ownership = self._provision_account()
            self._prepare_directories(ownership)

            release = self.releases.latest(self.config.releases.server_repo)
            asset = release.asset(self.config.releases.asset_suffix)
            artifact = self.config.server.root / asset.name
            self.releases.download(asset, artifact)

            self._write_server_properties()
            if ownership is not None:
                hand_over_tree(self.config.server.root, *ownership)

            record = InstallationRecord(
                artifact=artifact,
                pid_file=self.config.server.pid_file,
                release=release.tag,
            )
            self.registry.write_installation(record)
            return record

    def start(self) -> int:
        """Launch the server detached and record its pid."""
        with self._locked():
            return self._start()

    def stop(self) -> int:
        """Gracefully stop the running server and clear the pid file."""
        with self._locked():
            self.require_installed()
            return self._stop()

    def restart(self) -> RestartResult:
        """Stop (tolerating an already stopped server) then start."""
        with self._locked():
            self.require_installed()
            try:
                stopped: int | None = self._stop()
            except AlreadyStopped:
                stopped = None
            return RestartResult(stopped_pid=stopped, pid=self._start())

    def update(self) -> UpdateResult:
        """Replace the recorded artifact when a newer release is published."""
        with self._locked():
            record = self.require_installed()
            release = self.releases.latest(self.config.releases.server_repo)
            asset = release.asset(self.config.releases.asset_suffix)
            if asset.name == record.artifact.name:
                return UpdateResult(updated=False, artifact=record.artifact, release=release.tag)

            new_artifact = self.config.server.root / asset.name
            self.releases.download(asset, new_artifact)
            ownership = self._ownership()
            if ownership is not None:
                os.chown(new_artifact, *ownership)
            self.registry.repoint_artifact(new_artifact, release=release.tag)

            previous = record.artifact
            if previous != new_artifact:
                previous.unlink(missing_ok=True)
            return UpdateResult(
                updated=True,
                artifact=new_artifact,
                release=release.tag,
                previous=previous,
            )

    def uninstall(self) -> list[Path]:
        """Stop the server and remove every provisioned path."""
        with self._locked():
            record = self.registry.read_installation()
            root = self.config.server.root
            if record is None and not root.exists():
                raise NotInstalled("Blynk server is not installed.")
            if record is not None:
                try:
                    self._stop()
                except AlreadyStopped:
                    pass

            removed: list[Path] = []
            if root.exists():
                shutil.rmtree(root)
                removed.append(root)
            for path in (self.config.server.data_dir, self.config.backups.root):
                if path.exists():
                    shutil.rmtree(path)
                    removed.append(path)
            # Either may be configured outside the server root.
            for path in (self.config.server.config_file, self.config.server.console_log):
                if path.is_file():
                    path.unlink()
                    removed.append(path)
            if self.pid_file.clear():
                removed.append(self.pid_file.path)
            if self.registry.clear_installation():
                removed.append(self.config.state_file)
            return removed

    @contextmanager
    def maintenance(self) -> Iterator[MaintenanceWindow]:
        """Hold the lock with the server stopped, starting it again afterwards."""
        window = MaintenanceWindow()
        with self._locked():
            window.lock_wait_ms = self.last_lock_wait_ms
            self.require_installed()
            try:
                window.stopped_pid = self._stop()
            except AlreadyStopped:
                window.stopped_pid = None
            try:
                yield window
            except Exception as exc:
                try:
                    window.pid = self._start()
                except (ServerError, ProcessError, OSError) as start_exc:
                    exc.add_note(f"Restarting the server also failed: {start_exc}")
                raise
            window.pid = self._start()

    @contextmanager
    def locked(self) -> Iterator[int]:
        """Hold the server lock, yielding the time spent waiting for it."""
        with self._locked():
            yield self.last_lock_wait_ms

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------
    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self.locks.server_lock() as handle:
            self.last_lock_wait_ms = handle.wait_ms
            yield

    def _start(self) -> int:
        pid = self.pid_file.read()
        if pid is not None and self.supervisor.is_alive(pid):
            raise AlreadyRunning(f"Server already running (pid {pid}).")
        record = self.require_installed()
        # A pid file without a live process is stale.
        self.pid_file.clear()

        server = self.config.server
        new_pid = self.supervisor.spawn(
            self.command(record),
            log_file=server.console_log,
            cwd=server.root,
            user=self._ownership(),
        )
        self.pid_file.write(new_pid)
        return new_pid

    def _stop(self) -> int:
        pid = self.pid_file.read()
        if pid is None or not self.supervisor.is_alive(pid):
            self.pid_file.clear()
            raise AlreadyStopped("Server is already offline.")
        server = self.config.server
        exited = self.supervisor.terminate(
            pid,
            sig=signal.Signals[server.stop_signal],
            timeout=server.stop_timeout,
        )
        if not exited:
            raise StopTimeout(
                f"Server (pid {pid}) is still running {server.stop_timeout:g}s after "
                f"{server.stop_signal}; leaving it recorded."
            )
        self.pid_file.clear()
        return pid

    def _ownership(self) -> tuple[int, int] | None:
        if not self.config.manage_service_account or os.geteuid() != 0:
            return None
        return resolve_ownership(self.account)

    def _provision_account(self) -> tuple[int, int] | None:
        if not self.config.manage_service_account:
            return None
        plan = plan_service_account(self.account)
        apply_service_account_plan(plan, runner=self.runner)
        return self._ownership()

    def _prepare_directories(self, ownership: tuple[int, int] | None) -> None:
        uid, gid = ownership if ownership is not None else (None, None)
        server = self.config.server
        specs = [
            DirectorySpec(path=path, mode=0o775, uid=uid, gid=gid)
            for path in (server.root, server.data_dir, server.logs_dir, self.config.backups.root)
        ]
        apply_directory_plan(plan_directories(specs))

    def _write_server_properties(self) -> None:
        server = self.config.server
        lines = [
            f"admin.email={server.admin_email}",
            f"admin.pass={server.admin_password}",
            f"logs.folder={server.logs_dir}",
        ]
        server.config_file.parent.mkdir(parents=True, exist_ok=True)
        server.config_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
        os.chmod(server.config_file, 0o640)


__all__ = [
    "AlreadyInstalled",
    "AlreadyRunning",
    "AlreadyStopped",
    "MaintenanceWindow",
    "NotInstalled",
    "RestartResult",
    "ServerError",
    "ServerManager",
    "ServerStatus",
    "StopTimeout",
    "UpdateResult",
]
