"""Launch, observe and signal the detached server process."""
from __future__ import annotations

import os
import signal
import subprocess
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import psutil


class ProcessError(RuntimeError):
    """Raised when the server process cannot be launched or signalled."""


class ProcessSupervisor(Protocol):
    """Capabilities the lifecycle manager needs from a process backend."""

    def spawn(
        self,
        command: Sequence[str],
        *,
        log_file: Path,
        cwd: Path | None = None,
        user: tuple[int, int] | None = None,
    ) -> int:
        """Start *command* detached and return its pid."""
        ...

    def is_alive(self, pid: int) -> bool:
        """Return True while *pid* refers to a live process."""
        ...

    def terminate(self, pid: int, *, sig: signal.Signals, timeout: float) -> bool:
        """Send *sig* to *pid* and wait up to *timeout*; True if it exited."""
        ...


@dataclass(frozen=True, slots=True)
class PidFile:
    """Well-known file holding the pid of the running server."""

    path: Path

    def read(self) -> int | None:
        """Return the recorded pid, or None when absent or unreadable."""
        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            pid = int(text)
        except ValueError:
            return None
        return pid if pid > 0 else None

    def exists(self) -> bool:
        """Return True when the pid file is present."""
        return self.path.exists()

    def write(self, pid: int) -> None:
        """Atomically record *pid*."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(f"{pid}\n")
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.path)
        finally:
            tmp_path.unlink(missing_ok=True)

    def clear(self) -> bool:
        """Remove the pid file, returning True when one existed."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True


class SubprocessSupervisor:
    """Real backend built on :mod:`subprocess` and :mod:`psutil`."""

    def spawn(
        self,
        command: Sequence[str],
        *,
        log_file: Path,
        cwd: Path | None = None,
        user: tuple[int, int] | None = None,
    ) -> int:
        """Start *command* in a new session with output appended to *log_file*."""
        log_file.parent.mkdir(parents=True, exist_ok=True)
        kwargs: dict[str, object] = {}
        if user is not None and os.geteuid() == 0:
            uid, gid = user
            kwargs.update(user=uid, group=gid, extra_groups=[])
        try:
            with log_file.open("ab") as log_handle:
                process = subprocess.Popen(  # noqa: S603 - command built from config
                    list(command),
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    cwd=str(cwd) if cwd is not None else None,
                    start_new_session=True,
                    close_fds=True,
                    **kwargs,  # type: ignore[arg-type]
                )
        except OSError as exc:
            raise ProcessError(f"Failed to launch {command[0]}: {exc}") from exc
        return process.pid

    def is_alive(self, pid: int) -> bool:
        """Return True when *pid* exists and is not a zombie."""
        try:
            process = psutil.Process(pid)
            return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return False
        except psutil.AccessDenied:
            # Owned by another user (the service account); it still exists.
            return True

    def terminate(self, pid: int, *, sig: signal.Signals, timeout: float) -> bool:
        """Deliver *sig* and wait for the process to flush state and exit."""
        try:
            process = psutil.Process(pid)
            process.send_signal(sig)
        except psutil.NoSuchProcess:
            return True
        except psutil.AccessDenied as exc:
            raise ProcessError(f"Not permitted to signal pid {pid}: {exc}") from exc
        try:
            process.wait(timeout=timeout)
        except psutil.TimeoutExpired:
            return False
        except psutil.NoSuchProcess:
            return True
        return True


__all__ = ["PidFile", "ProcessError", "ProcessSupervisor", "SubprocessSupervisor"]
