"""Provisioning of the low-privilege account that runs the Blynk server."""
from __future__ import annotations

import grp
import pwd
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

NOLOGIN_SHELL = "/usr/sbin/nologin"


class ServiceAccountError(RuntimeError):
    """Raised when the service account cannot be provisioned."""


@dataclass(slots=True)
class ServiceAccountSpec:
    """Desired attributes for the server's runtime account."""

    name: str
    group: str | None = None
    system: bool = True
    create_group: bool = True
    home: Path | None = None
    shell: str | None = NOLOGIN_SHELL

    @classmethod
    def for_service_user(cls, name: str) -> ServiceAccountSpec:
        """Return the spec for a system user with a same-named group and no login."""
        return cls(name=name, group=name)


@dataclass(slots=True)
class ServiceAccountStatus:
    """Current state of the service account on the host."""

    user_exists: bool
    group_exists: bool
    uid: int | None = None
    gid: int | None = None
    shell: str | None = None
    primary_group: str | None = None


@dataclass(slots=True)
class ServiceAccountAction:
    """Single command required to satisfy the desired state."""

    kind: Literal["ensure-group", "create-user"]
    description: str
    command: list[str]


@dataclass(slots=True)
class ServiceAccountPlan:
    """Aggregated actions and warnings required to satisfy the spec."""

    spec: ServiceAccountSpec
    status: ServiceAccountStatus
    actions: list[ServiceAccountAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def inspect_service_account(spec: ServiceAccountSpec) -> ServiceAccountStatus:
    """Return the current status for *spec* from system passwd/group databases."""
    try:
        pw_entry = pwd.getpwnam(spec.name)
    except KeyError:
        status = ServiceAccountStatus(user_exists=False, group_exists=False)
    else:
        try:
            primary_group = grp.getgrgid(pw_entry.pw_gid).gr_name
        except KeyError:
            primary_group = None
        status = ServiceAccountStatus(
            user_exists=True,
            group_exists=False,
            uid=pw_entry.pw_uid,
            gid=pw_entry.pw_gid,
            shell=pw_entry.pw_shell,
            primary_group=primary_group,
        )

    if spec.group:
        try:
            grp.getgrnam(spec.group)
        except KeyError:
            pass
        else:
            status.group_exists = True
    return status


def plan_service_account(spec: ServiceAccountSpec) -> ServiceAccountPlan:
    """Return the groupadd/useradd commands needed to satisfy *spec*."""
    status = inspect_service_account(spec)
    plan = ServiceAccountPlan(spec=spec, status=status)

    if spec.group and not status.group_exists:
        if spec.create_group:
            command = ["groupadd"]
            if spec.system:
                command.append("--system")
            command.append(spec.group)
            plan.actions.append(
                ServiceAccountAction(
                    kind="ensure-group",
                    description=f"Create group '{spec.group}'.",
                    command=command,
                )
            )
        else:
            plan.warnings.append(f"Group '{spec.group}' is missing and create_group is False.")

    if not status.user_exists:
        command = ["useradd"]
        if spec.system:
            command.append("--system")
        if spec.home:
            command.extend(["--home-dir", str(spec.home)])
        else:
            command.append("--no-create-home")
        if spec.shell:
            command.extend(["--shell", spec.shell])
        if spec.group:
            command.extend(["--gid", spec.group])
        command.append(spec.name)
        plan.actions.append(
            ServiceAccountAction(
                kind="create-user",
                description=f"Create service user '{spec.name}'.",
                command=command,
            )
        )
    elif spec.group and status.primary_group and status.primary_group != spec.group:
        plan.warnings.append(
            f"User '{spec.name}' primary group is '{status.primary_group}', "
            f"expected '{spec.group}'."
        )

    return plan


Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


def apply_service_account_plan(plan: ServiceAccountPlan, *, runner: Runner | None = None) -> int:
    """Execute the commands described by *plan* and return how many ran."""
    if runner is None:
        runner = _default_runner

    for action in plan.actions:
        try:
            runner(action.command)
        except FileNotFoundError as exc:
            raise ServiceAccountError(f"{action.command[0]} not found: {exc}") from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or exc.stdout or "").strip() or f"exit {exc.returncode}"
            raise ServiceAccountError(f"{action.description} failed: {detail}") from exc
    return len(plan.actions)


def resolve_ownership(spec: ServiceAccountSpec) -> tuple[int, int] | None:
    """Return ``(uid, gid)`` for *spec* when the account exists on this host."""
    try:
        pw_entry = pwd.getpwnam(spec.name)
    except KeyError:
        return None
    gid = pw_entry.pw_gid
    if spec.group:
        try:
            gid = grp.getgrnam(spec.group).gr_gid
        except KeyError:
            pass
    return pw_entry.pw_uid, gid


def _default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, check=True, capture_output=True, text=True)  # noqa: S603,S607


__all__ = [
    "NOLOGIN_SHELL",
    "ServiceAccountAction",
    "ServiceAccountError",
    "ServiceAccountPlan",
    "ServiceAccountSpec",
    "ServiceAccountStatus",
    "apply_service_account_plan",
    "inspect_service_account",
    "plan_service_account",
    "resolve_ownership",
]
