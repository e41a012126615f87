"""Shared fixtures: an isolated host tree, a fake command runner and kube-envs."""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from kubeboot.commands import CommandError
from kubeboot.config import BootSettings, Configuration, load_settings

FIXTURES = Path(__file__).parent / "fixtures"

DOCKER_TAGS = {
    "kube-apiserver": "v1.3.0-beta.2",
    "kube-controller-manager": "v1.3.0-beta.2",
    "kube-scheduler": "v1.3.0-beta.2",
    "kube-proxy": "v1.3.0-beta.2",
}

BASE_ENV = {
    "DNS_SERVER_IP": "10.0.0.10",
    "DNS_DOMAIN": "cluster.local",
    "DNS_REPLICAS": "1",
    "CA_CERT": "Y2EtY2VydA==",
    "KUBELET_CERT": "a3ViZWxldC1jZXJ0",
    "KUBELET_KEY": "a3ViZWxldC1rZXk=",
    "KUBE_PROXY_TOKEN": "proxy-token",
    "KUBERNETES_MASTER_NAME": "kubernetes-master",
    "NUM_NODES": "3",
}

CONTROL_PLANE_ENV = {
    **BASE_ENV,
    "KUBERNETES_MASTER": "true",
    "MASTER_IP_RANGE": "10.246.0.0/24",
    "MASTER_CERT": "c2VydmVyLWNlcnQ=",
    "MASTER_KEY": "c2VydmVyLWtleQ==",
    "KUBE_USER": "admin",
    "KUBE_PASSWORD": "s3cret",
    "KUBE_BEARER_TOKEN": "admin-token",
    "KUBELET_TOKEN": "kubelet-token",
    "SERVICE_CLUSTER_IP_RANGE": "10.0.0.0/16",
    "ADMISSION_CONTROL": "NamespaceLifecycle,LimitRanger,ServiceAccount,ResourceQuota",
}

WORKER_ENV = {
    **BASE_ENV,
    "KUBERNETES_MASTER": "false",
}

CLOUD_ENV = {
    "PROJECT_ID": "demo-project",
    "TOKEN_URL": "https://example.invalid/token",
    "TOKEN_BODY": "body",
    "NODE_NETWORK": "default",
    "PROXY_SSH_USER": "tunnel",
}


@dataclass
class Rule:
    prefix: tuple[str, ...]
    stdout: str = ""
    returncode: int = 0
    failures: int = 0


@dataclass
class FakeRunner:
    """Stand-in for :func:`kubeboot.commands.run_command` recording every call."""

    calls: list[list[str]] = field(default_factory=list)
    timeouts: list[float | None] = field(default_factory=list)
    log_paths: list[Path | None] = field(default_factory=list)
    rules: list[Rule] = field(default_factory=list)

    def on(
        self,
        *prefix: str,
        stdout: str = "",
        returncode: int = 0,
        failures: int = 0,
    ) -> FakeRunner:
        """Configure the response for commands starting with *prefix*."""
        self.rules.append(Rule(tuple(prefix), stdout, returncode, failures))
        return self

    def commands(self, program: str) -> list[list[str]]:
        return [call for call in self.calls if call and call[0] == program]

    def __call__(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: float | None = None,
        log_path: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = list(args)
        self.calls.append(command)
        self.timeouts.append(timeout)
        self.log_paths.append(log_path)
        rule = self._match(command)
        if rule is not None and rule.failures > 0:
            rule.failures -= 1
            raise CommandError(
                f"{' '.join(command)} failed (exit 1): simulated", args=command, returncode=1
            )
        stdout = rule.stdout if rule else ""
        returncode = rule.returncode if rule else 0
        if check and returncode != 0:
            raise CommandError(
                f"{' '.join(command)} failed (exit {returncode}): simulated",
                args=command,
                returncode=returncode,
            )
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr="")

    def _match(self, command: list[str]) -> Rule | None:
        for rule in reversed(self.rules):
            if tuple(command[: len(rule.prefix)]) == rule.prefix:
                return rule
        return None


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def settings(tmp_path: Path) -> BootSettings:
    """Settings whose every path lives under ``tmp_path/host``."""
    host = tmp_path / "host"
    overrides: dict[str, object] = {
        "logs_dir": str(tmp_path / "logs"),
        "templates_dir": str(tmp_path / "template-overrides"),
        "paths": {
            "kube_home": str(host / "home" / "kubernetes"),
            "kubernetes_dir": str(host / "etc" / "kubernetes"),
            "kubelet_dir": str(host / "var" / "lib" / "kubelet"),
            "kube_proxy_dir": str(host / "var" / "lib" / "kube-proxy"),
            "srv_dir": str(host / "etc" / "srv"),
            "etcd_dir": str(host / "var" / "etcd"),
            "log_dir": str(host / "var" / "log"),
            "defaults_dir": str(host / "etc" / "default"),
            "etc_dir": str(host / "etc"),
        },
        "disk": {
            "device": str(host / "dev" / "disk" / "by-id" / "google-master-pd"),
            "mount_point": str(host / "mnt" / "disks" / "master-pd"),
            "format_tool": "safe_format_and_mount",
        },
        "images": {"delay": 0},
        "metadata": {"delay": 0, "url": "http://metadata.invalid/external-ip"},
        "binaries": {"kubelet": "kubelet"},
    }
    return load_settings(config_file=tmp_path / "absent.yml", env={}, overrides=overrides)


@pytest.fixture
def node_image(settings: BootSettings) -> BootSettings:
    """Populate ``kube_home`` with manifest templates and image tarballs."""
    paths = settings.paths
    shutil.copytree(FIXTURES / "kube-manifests", paths.manifests_source)
    paths.docker_files.mkdir(parents=True)
    for image, tag in DOCKER_TAGS.items():
        (paths.docker_files / f"{image}.tar").write_bytes(b"tar")
        (paths.docker_files / f"{image}.docker_tag").write_text(f"{tag}\n", encoding="utf-8")
    return settings


@pytest.fixture
def control_plane_config() -> Configuration:
    return Configuration(CONTROL_PLANE_ENV)


@pytest.fixture
def worker_config() -> Configuration:
    return Configuration(WORKER_ENV)
