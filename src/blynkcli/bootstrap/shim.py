"""System-wide ``blynkcli`` executable shim and self-update helpers."""
from __future__ import annotations

import os
import shlex
import subprocess
import sys
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

SHIM_MARKER = "# Installed by blynkcli setup"


class ShimError(RuntimeError):
    """Raised when the CLI shim cannot be installed, removed or updated."""


@dataclass(slots=True)
class CliShim:
    """Manage the small launcher placed on ``PATH``."""

    executable: Path
    python: str = sys.executable

    def render(self) -> str:
        """Return the shim script contents."""
        interpreter = shlex.quote(self.python)
        return f'#!/bin/sh\n{SHIM_MARKER}\nexec {interpreter} -m blynkcli "$@"\n'

    def is_installed(self) -> bool:
        """Return True when something exists at the executable path."""
        return self.executable.exists()

    def install(self) -> Path:
        """Write the shim, refusing to overwrite an existing executable."""
        if self.is_installed():
            raise ShimError(f"blynkcli is already installed at {self.executable}.")
        parent = self.executable.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(parent), prefix=f".{self.executable.name}.")
        except OSError as exc:
            raise ShimError(f"Cannot write to {parent}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(self.render())
            os.chmod(tmp_path, 0o755)
            os.replace(tmp_path, self.executable)
        except OSError as exc:
            raise ShimError(f"Failed to install {self.executable}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return self.executable

    def remove(self) -> Path:
        """Delete the shim."""
        try:
            self.executable.unlink()
        except FileNotFoundError as exc:
            raise ShimError(f"blynkcli is not installed at {self.executable}.") from exc
        except OSError as exc:
            raise ShimError(f"Failed to remove {self.executable}: {exc}") from exc
        return self.executable


@dataclass(frozen=True, slots=True)
class SelfUpdatePlan:
    """Outcome of comparing the running version with the latest release."""

    current: str
    latest: str
    source: str | None

    @property
    def available(self) -> bool:
        """Return True when the latest release is newer than the running one."""
        try:
            return _parse_version(self.latest) > _parse_version(self.current)
        except InvalidVersion:
            return self.latest.lstrip("v") != self.current.lstrip("v")


Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


def apply_self_update(
    plan: SelfUpdatePlan,
    *,
    python: str = sys.executable,
    runner: Runner | None = None,
) -> None:
    """Install the release described by *plan* with pip."""
    if plan.source is None:
        raise ShimError(f"Release {plan.latest} does not provide an installable source.")
    if runner is None:
        runner = _default_runner
    command = [python, "-m", "pip", "install", "--upgrade", plan.source]
    try:
        runner(command)
    except subprocess.CalledProcessError as exc:
        detail = (exc.stderr or exc.stdout or "").strip() or f"exit {exc.returncode}"
        raise ShimError(f"pip failed to install {plan.latest}: {detail}") from exc


def _parse_version(value: str) -> Version:
    return Version(value.strip().lstrip("vV"))


def _default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, check=True, capture_output=True, text=True)  # noqa: S603


__all__ = ["CliShim", "SelfUpdatePlan", "ShimError", "apply_self_update"]
