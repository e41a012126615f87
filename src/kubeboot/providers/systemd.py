"""Systemd provider for host daemons configured through ``/etc/default``."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from ..commands import CommandError, Runner, run_command
from ..templates import TemplateEngine


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Write daemon environment files and drive their units with systemctl."""

    templates: TemplateEngine
    defaults_dir: Path = Path("/etc/default")
    systemctl_bin: str = "systemctl"
    runner: Runner = run_command

    def unit_name(self, daemon: str) -> str:
        """Return the systemd unit name for *daemon*."""
        return daemon if daemon.endswith(".service") else f"{daemon}.service"

    def environment_file(self, daemon: str) -> Path:
        """Return the ``/etc/default`` file read by *daemon*'s unit."""
        return self.defaults_dir / daemon

    def write_environment(self, daemon: str, variable: str, value: str) -> bool:
        """Persist ``variable="value"`` as the whole environment file of *daemon*."""
        return self.templates.render_to_path(
            "defaults/opts.j2",
            self.environment_file(daemon),
            {"variable": variable, "value": value},
            mode=0o644,
        )

    def start(self, daemon: str) -> subprocess.CompletedProcess[str]:
        """Start the unit for *daemon*."""
        return self._systemctl("start", self.unit_name(daemon))

    # ------------------------------------------------------------------
    def _systemctl(self, command: str, unit: str) -> subprocess.CompletedProcess[str]:
        args = [self.systemctl_bin, command, unit]
        try:
            return self.runner(args)
        except CommandError as exc:
            raise SystemdError(str(exc)) from exc


__all__ = ["SystemdError", "SystemdProvider"]
