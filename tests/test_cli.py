"""Tests for the kubeboot command line."""
from __future__ import annotations

import json
from pathlib import Path

import yaml
from typer.testing import CliRunner

from kubeboot import __version__
from kubeboot.cli import app

runner = CliRunner()


def _prepare_environment(
    tmp_path: Path,
    *,
    kube_env: dict[str, str] | None = None,
    settings: dict[str, object] | None = None,
) -> tuple[dict[str, str], Path]:
    """Write a settings file rooted in *tmp_path*; return (env, config path)."""
    kube_home = tmp_path / "home" / "kubernetes"
    kube_home.mkdir(parents=True)
    config: dict[str, object] = {
        "logs_dir": str(tmp_path / "logs"),
        "templates_dir": str(tmp_path / "templates"),
        "paths": {"kube_home": str(kube_home)},
    }
    config.update(settings or {})
    config_path = tmp_path / "config.yml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    if kube_env is not None:
        lines = [f"{key}: '{value}'" for key, value in kube_env.items()]
        (kube_home / "kube-env").write_text("\n".join(lines) + "\n", encoding="utf-8")
    env = {"KUBEBOOT_CONFIG_FILE": str(config_path), "COLUMNS": "200"}
    return env, config_path


def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    """CLI ``--version`` flag emits the package version."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "configure" in result.stdout


def test_invalid_settings_exit_with_usage_code(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path, settings={"colour": "blue"})

    result = runner.invoke(app, ["plan", "--role", "worker"], env=env)

    assert result.exit_code == 2
    assert "Unknown configuration keys: colour" in result.stdout


def test_role_reads_kube_env(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path, kube_env={"KUBERNETES_MASTER": "true"})

    result = runner.invoke(app, ["role"], env=env)

    assert result.exit_code == 0
    assert result.stdout.strip().endswith("control-plane")


def test_plan_for_explicit_role(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["plan", "--role", "worker"], env=env)

    assert result.exit_code == 0
    assert "kubeconfigs" in result.stdout
    assert "apiserver" not in result.stdout


def test_plan_uses_kube_env_role(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path, kube_env={"KUBERNETES_MASTER": "true"})

    result = runner.invoke(app, ["plan"], env=env)

    assert result.exit_code == 0
    assert "controller-manager" in result.stdout


def test_configure_without_kube_env_is_fatal(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["configure"], env=env)

    assert result.exit_code == 1
    log = tmp_path / "logs" / "operations.jsonl"
    record = json.loads(log.read_text(encoding="utf-8").splitlines()[-1])
    assert record["command"] == "configure --load-env"
    assert record["result"]["status"] == "error"
    assert "does not exist" in record["result"]["message"]


def test_render_to_stdout(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path)
    template = tmp_path / "kube-scheduler.manifest"
    template.write_text(
        "{% set params = \"\" -%}\nimage: {{ pillar['registry'] }}/sched\nargs: {{params}}\n",
        encoding="utf-8",
    )

    result = runner.invoke(
        app,
        ["render", str(template), "--set", "params=--v=4", "--pillar", "registry=gcr.io/x"],
        env=env,
    )

    assert result.exit_code == 0
    assert "image: gcr.io/x/sched\nargs: --v=4\n" in result.stdout


def test_render_to_file_reports_unresolved(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path)
    template = tmp_path / "kube-proxy.manifest"
    template.write_text("cpu: {{ cpurequest }}\n", encoding="utf-8")
    output = tmp_path / "out" / "kube-proxy.manifest"

    result = runner.invoke(app, ["render", str(template), "--output", str(output)], env=env)

    assert result.exit_code == 0
    assert "unresolved placeholder {{ cpurequest }}" in result.stdout
    assert output.read_text(encoding="utf-8") == "cpu: {{ cpurequest }}\n"


def test_render_rejects_malformed_assignment(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path)
    template = tmp_path / "etcd.manifest"
    template.write_text("x\n", encoding="utf-8")

    result = runner.invoke(app, ["render", str(template), "--set", "novalue"], env=env)

    assert result.exit_code == 2
