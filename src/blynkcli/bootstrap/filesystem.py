"""Directory planning helpers for the server root and its children."""
from __future__ import annotations

import os
import stat
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal


@dataclass(slots=True)
class DirectorySpec:
    """Desired state for a single directory."""

    path: Path
    mode: int = 0o775
    uid: int | None = None
    gid: int | None = None


@dataclass(slots=True)
class DirectoryAction:
    """Single filesystem change required to satisfy a :class:`DirectorySpec`."""

    kind: Literal["mkdir", "chmod", "chown"]
    spec: DirectorySpec
    description: str


@dataclass(slots=True)
class DirectoryPlan:
    """Ordered actions plus warnings for paths that cannot be fixed."""

    actions: list[DirectoryAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def plan_directories(specs: Iterable[DirectorySpec]) -> DirectoryPlan:
    """Compare *specs* against the filesystem and return the required actions."""
    plan = DirectoryPlan()
    for spec in specs:
        path = spec.path
        if path.exists() and not path.is_dir():
            plan.warnings.append(f"{path} exists but is not a directory.")
            continue
        if not path.exists():
            plan.actions.append(DirectoryAction("mkdir", spec, f"Create {path}."))
            if spec.uid is not None or spec.gid is not None:
                plan.actions.append(DirectoryAction("chown", spec, f"Set owner of {path}."))
            continue
        info = path.stat()
        if stat.S_IMODE(info.st_mode) != spec.mode:
            plan.actions.append(
                DirectoryAction("chmod", spec, f"Set mode {spec.mode:04o} on {path}.")
            )
        uid_differs = spec.uid is not None and info.st_uid != spec.uid
        gid_differs = spec.gid is not None and info.st_gid != spec.gid
        if uid_differs or gid_differs:
            plan.actions.append(DirectoryAction("chown", spec, f"Set owner of {path}."))
    return plan


def apply_directory_plan(plan: DirectoryPlan) -> None:
    """Apply every action in *plan* in order."""
    for action in plan.actions:
        spec = action.spec
        if action.kind == "mkdir":
            spec.path.mkdir(parents=True, exist_ok=True)
            # mkdir honours the umask, so set the mode explicitly.
            os.chmod(spec.path, spec.mode)
        elif action.kind == "chmod":
            os.chmod(spec.path, spec.mode)
        elif action.kind == "chown":
            os.chown(
                spec.path,
                -1 if spec.uid is None else spec.uid,
                -1 if spec.gid is None else spec.gid,
            )


def hand_over_tree(root: Path, uid: int, gid: int) -> None:
    """Recursively give *root* to ``uid:gid`` and make it group-writable."""
    for current, dirnames, filenames in os.walk(root):
        for name in [*dirnames, *filenames]:
            _hand_over(Path(current) / name, uid, gid)
    _hand_over(root, uid, gid)


def _hand_over(path: Path, uid: int, gid: int) -> None:
    if path.is_symlink():
        return
    os.chown(path, uid, gid)
    mode = stat.S_IMODE(path.stat().st_mode)
    os.chmod(path, mode | stat.S_IWGRP)


__all__ = [
    "DirectoryAction",
    "DirectoryPlan",
    "DirectorySpec",
    "apply_directory_plan",
    "hand_over_tree",
    "plan_directories",
]
