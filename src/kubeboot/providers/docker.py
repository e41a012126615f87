"""Container runtime provider: daemon flags and image tarball loading."""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from ..commands import Runner, run_command
from ..config import Configuration
from .systemd import SystemdProvider

LOGGER = logging.getLogger(__name__)

BASE_DOCKER_OPTS = "-p /var/run/docker.pid --bridge=cbr0 --iptables=false --ip-masq=false"


def assemble_docker_opts(config: Configuration) -> str:
    """Return the ``DOCKER_OPTS`` value for *config*."""
    opts = BASE_DOCKER_OPTS
    if config.is_true("TEST_CLUSTER"):
        opts += " --debug"
    return f"{opts} {config.value('EXTRA_DOCKER_OPTS')}"


@dataclass(slots=True)
class DockerProvider:
    """Configure the docker daemon and load images into its store."""

    systemd: SystemdProvider
    docker_bin: str = "docker"
    runner: Runner = run_command

    def write_daemon_flags(self, config: Configuration) -> bool:
        """Write ``DOCKER_OPTS`` to the daemon's environment file."""
        opts = assemble_docker_opts(config)
        changed = self.systemd.write_environment("docker", "DOCKER_OPTS", opts)
        if changed:
            LOGGER.info("Wrote docker daemon flags to %s", self.systemd.environment_file("docker"))
        return changed

    def load_image(
        self, tarball: Path, *, timeout: float | None = None
    ) -> subprocess.CompletedProcess[str]:
        """Run ``docker load -i <tarball>``; raises ``CommandError`` on failure."""
        return self.runner([self.docker_bin, "load", "-i", str(tarball)], timeout=timeout)


__all__ = ["BASE_DOCKER_OPTS", "DockerProvider", "assemble_docker_opts"]
