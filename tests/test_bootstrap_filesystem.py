"""Unit tests for directory layout planning helpers."""
from __future__ import annotations

import os
from pathlib import Path

from kubeboot.bootstrap.filesystem import (
    DirectorySpec,
    apply_directory_plan,
    ensure_directories,
    plan_directories,
)


def test_plan_creates_missing_directory(tmp_path: Path) -> None:
    """Plan should create directories that are absent on disk."""
    target = tmp_path / "mnt" / "disks" / "master-pd" / "var" / "etcd"
    spec = DirectorySpec(path=target, mode=0o700)

    plan = plan_directories([spec])
    assert [action.describe() for action in plan.actions] == [f"create {target} (mode 700)"]

    apply_directory_plan(plan)
    assert target.is_dir()
    assert target.stat().st_mode & 0o777 == 0o700


def test_plan_adjusts_permissions(tmp_path: Path) -> None:
    """Plan should adjust permissions when they differ from expectations."""
    target = tmp_path / "etc" / "kubernetes" / "addons"
    target.mkdir(parents=True)
    os.chmod(target, 0o700)

    plan = plan_directories([DirectorySpec(path=target, mode=0o755)])

    assert [action.kind for action in plan.actions] == ["chmod"]
    apply_directory_plan(plan)
    assert target.stat().st_mode & 0o777 == 0o755


def test_existing_directory_without_mode_needs_nothing(tmp_path: Path) -> None:
    target = tmp_path / "var" / "lib" / "kubelet"
    target.mkdir(parents=True)

    plan = ensure_directories([DirectorySpec(path=target)])

    assert plan.actions == []
    assert plan.warnings == []


def test_plan_warns_on_non_directory(tmp_path: Path) -> None:
    """Plan should warn when the target path is not a directory."""
    target = tmp_path / "var" / "lib" / "kube-proxy"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text("not a directory", encoding="utf-8")

    plan = plan_directories([DirectorySpec(path=target)])

    assert plan.actions == []
    assert plan.warnings == [f"{target} exists and is not a directory."]


def test_dry_run_reports_without_creating(tmp_path: Path) -> None:
    target = tmp_path / "etc" / "srv" / "kubernetes"

    touched = apply_directory_plan(plan_directories([DirectorySpec(path=target)]), dry_run=True)

    assert touched == [target]
    assert not target.exists()
