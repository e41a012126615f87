"""Persistent disk preparation for control-plane hosts.

The disk holds everything a control-plane host must keep across reboots and
upgrades: the key-value store data, the API server credentials and the SSH
tunnel key. Its layout on the mount point must never change without a
migration path, because existing clusters already have data at these paths.
"""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from ..commands import CommandError, Runner, run_command
from ..config import DiskConfig, PathsConfig
from .filesystem import DirectorySpec, ensure_directories
from .service_accounts import ServiceAccountSpec, ensure_service_account

LOGGER = logging.getLogger(__name__)


class MountError(RuntimeError):
    """Raised when the persistent disk cannot be formatted, mounted or laid out."""


def chown_tree(root: Path, user: str, group: str | None = None) -> None:
    """Recursively give *user* (and *group*) ownership of *root*."""
    shutil.chown(root, user=user, group=group)
    for dirpath, dirnames, filenames in os.walk(root):
        for name in (*dirnames, *filenames):
            shutil.chown(os.path.join(dirpath, name), user=user, group=group)


def force_symlink(target: Path, link: Path) -> bool:
    """Point *link* at *target*, replacing an existing link or file.

    Returns False when *link* is a real directory, which is left alone.
    """
    if link.is_symlink():
        if Path(os.readlink(link)) == target:
            return True
    elif link.is_dir():
        return False
    link.parent.mkdir(parents=True, exist_ok=True)
    staging = link.with_name(f".{link.name}.kubeboot-link")
    staging.unlink(missing_ok=True)
    staging.symlink_to(target)
    os.replace(staging, link)
    return True


@dataclass(slots=True)
class MountResult:
    """What :meth:`FilesystemPreparer.prepare` did."""

    mounted: bool
    device: Path | None = None
    mount_point: Path | None = None
    links: dict[Path, Path] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class FilesystemPreparer:
    """Find, format, mount and lay out the persistent disk."""

    disk: DiskConfig
    paths: PathsConfig
    runner: Runner = run_command
    chown: Callable[[Path, str, str | None], None] = chown_tree

    @property
    def etcd_data_dir(self) -> Path:
        return self.disk.mount_point / "var" / "etcd"

    @property
    def auth_data_dir(self) -> Path:
        return self.disk.mount_point / "srv" / "kubernetes"

    @property
    def sshproxy_data_dir(self) -> Path:
        return self.disk.mount_point / "srv" / "sshproxy"

    def find_device(self) -> Path | None:
        """Return the block device behind the stable disk link, if attached."""
        link = self.disk.device
        if not link.exists():
            return None
        return link.resolve()

    def prepare(self) -> MountResult:
        """Mount the disk when present; a missing disk is not an error."""
        device = self.find_device()
        if device is None:
            LOGGER.info("No persistent disk at %s; skipping mount.", self.disk.device)
            return MountResult(mounted=False)

        LOGGER.info("Mounting %s (%s) at %s", self.disk.device, device, self.disk.mount_point)
        self._format_and_mount()
        result = MountResult(mounted=True, device=device, mount_point=self.disk.mount_point)

        plan = ensure_directories(
            [
                DirectorySpec(self.etcd_data_dir, mode=0o700),
                DirectorySpec(self.paths.srv_dir),
                DirectorySpec(self.auth_data_dir),
                DirectorySpec(self.sshproxy_data_dir),
            ]
        )
        result.warnings.extend(plan.warnings)

        for target, link in (
            (self.etcd_data_dir, self.paths.etcd_dir),
            (self.auth_data_dir, self.paths.auth_dir),
            (self.sshproxy_data_dir, self.paths.sshproxy_dir),
        ):
            if force_symlink(target, link):
                result.links[link] = target
            else:
                result.warnings.append(f"{link} is a directory; not linking it to {target}.")

        account = ensure_service_account(
            ServiceAccountSpec(name=self.disk.service_user, home=self.paths.etcd_dir),
            runner=self.runner,
        )
        result.warnings.extend(account.warnings)
        try:
            self.chown(self.etcd_data_dir, self.disk.service_user, self.disk.service_user)
        except (LookupError, OSError) as exc:
            raise MountError(
                f"Cannot give {self.disk.service_user} ownership of {self.etcd_data_dir}: {exc}"
            ) from exc

        for warning in result.warnings:
            LOGGER.warning(warning)
        return result

    def _format_and_mount(self) -> None:
        mount_log = self.disk.mount_log
        self.disk.mount_point.mkdir(parents=True, exist_ok=True)
        command = [
            self.disk.format_tool,
            "-m",
            self.disk.format_command,
            str(self.disk.device),
            str(self.disk.mount_point),
        ]
        try:
            self.runner(command, log_path=mount_log)
        except CommandError as exc:
            raise MountError(f"master-pd mount failed, review {mount_log}") from exc


__all__ = ["FilesystemPreparer", "MountError", "MountResult", "chown_tree", "force_symlink"]
