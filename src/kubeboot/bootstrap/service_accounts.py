"""Inspect and provision the local identity the key-value store runs as."""
from __future__ import annotations

import grp
import pwd
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from ..commands import Runner, run_command


@dataclass(slots=True)
class ServiceAccountSpec:
    """Desired attributes for a service identity."""

    name: str
    home: Path | None = None
    shell: str | None = "/sbin/nologin"
    group: str | None = None
    system: bool = False


@dataclass(slots=True)
class ServiceAccountStatus:
    """Current state of the account on the host."""

    user_exists: bool
    uid: int | None = None
    gid: int | None = None
    home: Path | None = None
    shell: str | None = None
    primary_group: str | None = None


@dataclass(slots=True)
class ServiceAccountAction:
    """Single step required to satisfy the desired state."""

    kind: Literal["create-user"]
    description: str
    command: list[str]


@dataclass(slots=True)
class ServiceAccountPlan:
    """Actions and warnings required to satisfy a spec."""

    spec: ServiceAccountSpec
    status: ServiceAccountStatus
    actions: list[ServiceAccountAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def inspect_service_account(spec: ServiceAccountSpec) -> ServiceAccountStatus:
    """Return the current status for *spec* from the passwd/group databases."""
    try:
        entry = pwd.getpwnam(spec.name)
    except KeyError:
        return ServiceAccountStatus(user_exists=False)
    try:
        primary_group: str | None = grp.getgrgid(entry.pw_gid).gr_name
    except KeyError:
        primary_group = None
    return ServiceAccountStatus(
        user_exists=True,
        uid=entry.pw_uid,
        gid=entry.pw_gid,
        home=Path(entry.pw_dir),
        shell=entry.pw_shell,
        primary_group=primary_group,
    )


def plan_service_account(spec: ServiceAccountSpec) -> ServiceAccountPlan:
    """Return a plan describing how to satisfy *spec* on the current host."""
    status = inspect_service_account(spec)
    plan = ServiceAccountPlan(spec=spec, status=status)

    if not status.user_exists:
        command = ["useradd"]
        if spec.system:
            command.append("--system")
        if spec.shell:
            command.extend(["-s", spec.shell])
        if spec.home:
            command.extend(["-d", str(spec.home)])
        if spec.group:
            command.extend(["-g", spec.group])
        command.append(spec.name)
        plan.actions.append(
            ServiceAccountAction(
                kind="create-user",
                description=f"Create service user '{spec.name}'.",
                command=command,
            )
        )
        return plan

    if spec.home and status.home and status.home != spec.home:
        plan.warnings.append(
            f"User '{spec.name}' home '{status.home}' differs from desired '{spec.home}'."
        )
    if spec.shell and status.shell and status.shell != spec.shell:
        plan.warnings.append(
            f"User '{spec.name}' shell '{status.shell}' differs from desired '{spec.shell}'."
        )
    if spec.group and status.primary_group and status.primary_group != spec.group:
        plan.warnings.append(
            f"User '{spec.name}' primary group is '{status.primary_group}', "
            f"expected '{spec.group}'."
        )
    return plan


def apply_service_account_plan(
    plan: ServiceAccountPlan,
    *,
    runner: Runner | None = None,
    dry_run: bool = False,
) -> None:
    """Execute the commands described by *plan*."""
    if runner is None:
        runner = run_command
    if dry_run:
        return
    for action in plan.actions:
        runner(action.command)


def ensure_service_account(
    spec: ServiceAccountSpec,
    *,
    runner: Runner | None = None,
) -> ServiceAccountPlan:
    """Create the account described by *spec* when it does not exist yet."""
    plan = plan_service_account(spec)
    apply_service_account_plan(plan, runner=runner)
    return plan


__all__ = [
    "ServiceAccountAction",
    "ServiceAccountPlan",
    "ServiceAccountSpec",
    "ServiceAccountStatus",
    "apply_service_account_plan",
    "ensure_service_account",
    "inspect_service_account",
    "plan_service_account",
]
