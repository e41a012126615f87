"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from kubeboot.config import (
    BootSettings,
    ConfigError,
    ConfigMissingError,
    Configuration,
    load_environment,
    load_settings,
    parse_environment,
)


def test_load_settings_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    settings = load_settings(config_file=tmp_path / "absent.yml", env={})

    assert isinstance(settings, BootSettings)
    assert settings.paths.kube_home == Path("/home/kubernetes")
    assert settings.paths.env_file == Path("/home/kubernetes/kube-env")
    assert settings.paths.manifests_dir == Path("/etc/kubernetes/manifests")
    assert settings.paths.auth_dir == Path("/etc/srv/kubernetes")
    assert settings.disk.mount_point == Path("/mnt/disks/master-pd")
    assert settings.disk.mount_log == Path("/var/log/master-pd-mount.log")
    assert settings.images.max_attempts == 5
    assert settings.images.delay == 5.0
    assert settings.images.timeout == 30.0
    assert settings.metadata.retry.delay == 3.0


def test_load_settings_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file and derived paths follow them."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(
        "paths:\n"
        "  kube_home: /opt/kubernetes\n"
        "  kubernetes_dir: /srv/k8s\n"
        "images:\n"
        "  max_attempts: 3\n",
        encoding="utf-8",
    )

    settings = load_settings(config_file=cfg, env={})

    assert settings.config_file == cfg
    assert settings.paths.env_file == Path("/opt/kubernetes/kube-env")
    assert settings.paths.manifests_dir == Path("/srv/k8s/manifests")
    assert settings.images.max_attempts == 3


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Prefixed environment variables override the file layer."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("images:\n  max_attempts: 3\n", encoding="utf-8")
    env = {
        "KUBEBOOT_IMAGES__MAX_ATTEMPTS": "7",
        "KUBEBOOT_DISK__SERVICE_USER": "etcd2",
        "UNRELATED": "ignored",
    }

    settings = load_settings(config_file=cfg, env=env)

    assert settings.images.max_attempts == 7
    assert settings.disk.service_user == "etcd2"


def test_config_file_env_var_selects_file(tmp_path: Path) -> None:
    cfg = tmp_path / "alt.yml"
    cfg.write_text("logs_dir: /tmp/kubeboot-logs\n", encoding="utf-8")

    settings = load_settings(env={"KUBEBOOT_CONFIG_FILE": str(cfg)})

    assert settings.logs_dir == Path("/tmp/kubeboot-logs")


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    cfg = tmp_path / "config.yml"
    cfg.write_text("paths:\n  nope: /x\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown paths configuration keys: nope"):
        load_settings(config_file=cfg, env={})


def test_invalid_retry_policy_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_settings(
            config_file=tmp_path / "absent.yml",
            env={},
            overrides={"images": {"max_attempts": 0}},
        )


def test_parse_environment_accepts_shell_and_yaml_forms() -> None:
    text = (
        "# generated by the provisioner\n"
        "\n"
        "KUBERNETES_MASTER=true\n"
        "export DNS_DOMAIN='cluster.local'\n"
        'KUBELET_TEST_ARGS="--max-pods=110 --v=4"\n'
        "NUM_NODES: '3'\n"
        "ENABLE_CLUSTER_DNS: \"true\"\n"
        "NODE_LABELS: role=worker\n"
        "EMPTY_VALUE=\n"
    )

    values = parse_environment(text)

    assert values == {
        "KUBERNETES_MASTER": "true",
        "DNS_DOMAIN": "cluster.local",
        "KUBELET_TEST_ARGS": "--max-pods=110 --v=4",
        "NUM_NODES": "3",
        "ENABLE_CLUSTER_DNS": "true",
        "NODE_LABELS": "role=worker",
        "EMPTY_VALUE": "",
    }


def test_parse_environment_keeps_hash_inside_words() -> None:
    text = (
        "KUBE_PASSWORD=ab#cd\n"
        "KUBE_USER=admin # trailing comment\n"
        "KUBE_BEARER_TOKEN='quoted # kept'\n"
        "KUBELET_TOKEN=escaped\\ #kept\n"
    )

    values = parse_environment(text)

    assert values["KUBE_PASSWORD"] == "ab#cd"
    assert values["KUBE_USER"] == "admin"
    assert values["KUBE_BEARER_TOKEN"] == "quoted # kept"
    assert values["KUBELET_TOKEN"] == "escaped #kept"


def test_parse_environment_rejects_garbage() -> None:
    with pytest.raises(ConfigError, match="Unrecognised line"):
        parse_environment("this is not an assignment\n")


def test_load_environment_missing_file(tmp_path: Path) -> None:
    missing = tmp_path / "kube-env"

    with pytest.raises(ConfigMissingError, match="does not exist!! Terminate"):
        load_environment(missing)


def test_configuration_is_read_only(tmp_path: Path) -> None:
    env_file = tmp_path / "kube-env"
    env_file.write_text("KUBE_USER=admin\nEMPTY=\n", encoding="utf-8")

    config = load_environment(env_file)

    assert config.source == env_file
    assert config["KUBE_USER"] == "admin"
    assert config.is_set("KUBE_USER")
    assert not config.is_set("EMPTY")
    assert config.value("EMPTY", "fallback") == "fallback"
    with pytest.raises(TypeError):
        config._values["KUBE_USER"] = "root"  # type: ignore[index]


def test_require_reports_missing_key() -> None:
    config = Configuration({"PRESENT": "yes", "BLANK": ""})

    assert config.require("PRESENT") == "yes"
    with pytest.raises(ConfigError, match="BLANK is not set"):
        config.require("BLANK")


def test_cloud_config_needs_all_four_values() -> None:
    partial = Configuration({"PROJECT_ID": "p", "TOKEN_URL": "u", "TOKEN_BODY": "b"})
    full = Configuration({**partial, "NODE_NETWORK": "default"})

    assert partial.cloud_config_enabled is False
    assert full.cloud_config_enabled is True
