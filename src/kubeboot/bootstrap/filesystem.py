"""Plan and apply the directory layout a node needs before any stage writes."""
from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal


@dataclass(slots=True)
class DirectorySpec:
    """Desired directory and, optionally, its permission bits."""

    path: Path
    mode: int | None = None


@dataclass(slots=True)
class DirectoryAction:
    """Single change required to reach the desired layout."""

    kind: Literal["mkdir", "chmod"]
    path: Path
    mode: int | None = None

    def describe(self) -> str:
        """Return a one-line human readable summary."""
        if self.kind == "mkdir":
            suffix = f" (mode {self.mode:o})" if self.mode is not None else ""
            return f"create {self.path}{suffix}"
        return f"chmod {self.mode:o} {self.path}"


@dataclass(slots=True)
class DirectoryPlan:
    """Actions and warnings collected while inspecting a set of specs."""

    specs: list[DirectorySpec]
    actions: list[DirectoryAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def plan_directories(specs: Iterable[DirectorySpec]) -> DirectoryPlan:
    """Compare *specs* with the filesystem and return the required actions."""
    plan = DirectoryPlan(specs=list(specs))
    for spec in plan.specs:
        path = spec.path
        if path.exists() or path.is_symlink():
            if not path.is_dir():
                plan.warnings.append(f"{path} exists and is not a directory.")
                continue
            if spec.mode is not None and (path.stat().st_mode & 0o777) != spec.mode:
                plan.actions.append(DirectoryAction(kind="chmod", path=path, mode=spec.mode))
            continue
        plan.actions.append(DirectoryAction(kind="mkdir", path=path, mode=spec.mode))
    return plan


def apply_directory_plan(plan: DirectoryPlan, *, dry_run: bool = False) -> list[Path]:
    """Execute *plan*; return the paths that were created or changed."""
    touched: list[Path] = []
    for action in plan.actions:
        if dry_run:
            touched.append(action.path)
            continue
        if action.kind == "mkdir":
            action.path.mkdir(parents=True, exist_ok=True)
        if action.mode is not None:
            # mkdir honours the umask, so the mode is always set explicitly
            os.chmod(action.path, action.mode)
        touched.append(action.path)
    return touched


def ensure_directories(specs: Iterable[DirectorySpec]) -> DirectoryPlan:
    """Plan and apply *specs* in one step, returning the executed plan."""
    plan = plan_directories(specs)
    apply_directory_plan(plan)
    return plan


__all__ = [
    "DirectoryAction",
    "DirectoryPlan",
    "DirectorySpec",
    "apply_directory_plan",
    "ensure_directories",
    "plan_directories",
]
