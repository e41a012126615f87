"""Systemd provider tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from kubeboot.config import Configuration
from kubeboot.providers.docker import BASE_DOCKER_OPTS, DockerProvider, assemble_docker_opts
from kubeboot.providers.systemd import SystemdError, SystemdProvider
from kubeboot.templates import TemplateEngine

from conftest import FakeRunner


@pytest.fixture
def provider(tmp_path: Path, runner: FakeRunner) -> SystemdProvider:
    return SystemdProvider(
        TemplateEngine.with_overrides(None), defaults_dir=tmp_path / "default", runner=runner
    )


def test_unit_names(provider: SystemdProvider) -> None:
    assert provider.unit_name("kubelet") == "kubelet.service"
    assert provider.unit_name("docker.service") == "docker.service"


def test_write_environment(provider: SystemdProvider, tmp_path: Path) -> None:
    changed = provider.write_environment("kubelet", "KUBELET_OPTS", "--v=2 --port=10250")

    path = tmp_path / "default" / "kubelet"
    assert changed is True
    assert path.read_text(encoding="utf-8").strip() == 'KUBELET_OPTS="--v=2 --port=10250"'
    assert provider.write_environment("kubelet", "KUBELET_OPTS", "--v=2 --port=10250") is False


def test_start_runs_systemctl(provider: SystemdProvider, runner: FakeRunner) -> None:
    provider.start("kubelet")

    assert runner.calls == [["systemctl", "start", "kubelet.service"]]


def test_failures_raise_systemd_error(provider: SystemdProvider, runner: FakeRunner) -> None:
    runner.on("systemctl", "start", returncode=5)

    with pytest.raises(SystemdError, match="kubelet.service"):
        provider.start("kubelet")


def test_docker_opts() -> None:
    assert assemble_docker_opts(Configuration({})).strip() == BASE_DOCKER_OPTS
    config = Configuration({"TEST_CLUSTER": "true", "EXTRA_DOCKER_OPTS": "--log-level=warn"})
    assert assemble_docker_opts(config) == f"{BASE_DOCKER_OPTS} --debug --log-level=warn"


def test_docker_daemon_flags(provider: SystemdProvider, tmp_path: Path, runner: FakeRunner) -> None:
    docker = DockerProvider(provider, runner=runner)

    assert docker.write_daemon_flags(Configuration({"TEST_CLUSTER": "true"})) is True

    text = (tmp_path / "default" / "docker").read_text(encoding="utf-8")
    assert text.startswith(f'DOCKER_OPTS="{BASE_DOCKER_OPTS} --debug')
    docker.load_image(tmp_path / "kube-proxy.tar", timeout=12.0)
    assert runner.calls[-1] == ["docker", "load", "-i", str(tmp_path / "kube-proxy.tar")]
    assert runner.timeouts[-1] == 12.0
