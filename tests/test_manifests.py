"""Manifest token substitution tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from kubeboot.manifests import (
    DuplicateTokenError,
    ManifestError,
    ManifestTemplater,
    Token,
    TokenTable,
    find_tokens,
    strip_residue,
)

TEMPLATE = """\
{% set params = "" -%}
  {# salt comment #}
# shell comment
{
  "image": "{{pillar['kube_docker_registry']}}/kube-apiserver:{{ pillar['apiserver_tag'] }}",
  "command": "kube-apiserver {{params}}",
  "ports": [{{secure_port}}, {{ secure_port }}],
  "mounts": [{{cloud_config_mount}}{% if x %}inline{% endif %} {"name": "a"}],
  "keep": "{{ unknown_token }}"
}
"""


def _table() -> TokenTable:
    return TokenTable(
        {"params": "--v=2", "secure_port": "443"},
        pillar={"kube_docker_registry": "gcr.io/google_containers", "apiserver_tag": "v1"},
    ).disable("cloud_config_mount")


def test_strip_residue_removes_directive_and_comment_lines() -> None:
    stripped = strip_residue(TEMPLATE)

    assert "{% set" not in stripped
    assert "{#" not in stripped
    assert "# shell comment" not in stripped
    assert "inline" in stripped
    assert "{% if" not in stripped and "{% endif %}" not in stripped
    assert stripped.startswith("{\n")


def test_render_text_substitutes_both_forms() -> None:
    rendered = ManifestTemplater().render_text(TEMPLATE, _table())

    assert '"image": "gcr.io/google_containers/kube-apiserver:v1"' in rendered.text
    assert '"ports": [443, 443]' in rendered.text
    assert '"command": "kube-apiserver --v=2"' in rendered.text
    assert rendered.substitutions["{{ secure_port }}"] == 2


def test_disabled_tokens_render_empty() -> None:
    rendered = ManifestTemplater().render_text(TEMPLATE, _table())

    assert '"mounts": [inline {"name": "a"}]' in rendered.text


def test_no_table_token_survives_rendering() -> None:
    table = _table()
    rendered = ManifestTemplater().render_text(TEMPLATE, table)

    remaining = set(find_tokens(rendered.text))
    assert remaining.isdisjoint(set(table))


def test_unknown_tokens_are_left_and_reported() -> None:
    rendered = ManifestTemplater().render_text(TEMPLATE, _table())

    assert '"keep": "{{ unknown_token }}"' in rendered.text
    assert rendered.unresolved == ("{{ unknown_token }}",)


def test_values_are_not_re_expanded() -> None:
    table = TokenTable({"a": "{{ b }}", "b": "boom"})

    rendered = ManifestTemplater().render_text("x={{a}} y={{b}}\n", table)

    assert rendered.text == "x={{ b }} y=boom\n"


def test_rebinding_with_another_value_is_rejected() -> None:
    table = TokenTable({"secure_port": "443"})
    table.set("secure_port", "443")

    with pytest.raises(DuplicateTokenError):
        table.set("secure_port", "8080")


def test_simple_and_keyed_tokens_are_distinct() -> None:
    table = TokenTable({"dns_domain": "simple"}, pillar={"dns_domain": "keyed"})

    assert table.lookup(Token.simple("dns_domain")) == "simple"
    assert table.lookup(Token.pillar("dns_domain")) == "keyed"
    assert Token.pillar("dns_domain").placeholder == "{{ pillar['dns_domain'] }}"


def test_rewrites_apply_before_tokens() -> None:
    text = '"path": "/mnt/master-pd/var/etcd{{ suffix }}"\n'

    rendered = ManifestTemplater().render_text(
        text,
        TokenTable({"suffix": "-events"}),
        rewrites={"/mnt/master-pd/var/etcd": "/mnt/disks/master-pd/var/etcd"},
    )

    assert rendered.text == '"path": "/mnt/disks/master-pd/var/etcd-events"\n'


def test_install_leaves_template_untouched(tmp_path: Path) -> None:
    template = tmp_path / "src" / "kube-scheduler.manifest"
    template.parent.mkdir()
    template.write_text("# comment\nparams: {{params}}\n", encoding="utf-8")
    destination = tmp_path / "manifests"

    templater = ManifestTemplater()
    first = templater.install(template, destination, TokenTable({"params": "--v=2"}))
    second = templater.install(template, destination, TokenTable({"params": "--v=2"}))

    assert template.read_text(encoding="utf-8") == "# comment\nparams: {{params}}\n"
    assert first.destination.read_text(encoding="utf-8") == "params: --v=2\n"
    assert first.changed is True
    assert second.changed is False
    assert (first.destination.stat().st_mode & 0o777) == 0o644
    assert sorted(p.name for p in destination.iterdir()) == ["kube-scheduler.manifest"]


def test_install_can_rename(tmp_path: Path) -> None:
    template = tmp_path / "etcd.manifest"
    template.write_text("name: etcd{{ suffix }}\n", encoding="utf-8")

    result = ManifestTemplater().install(
        template, tmp_path / "out", TokenTable({"suffix": "-events"}), name="etcd-events.manifest"
    )

    assert result.destination == tmp_path / "out" / "etcd-events.manifest"
    assert result.destination.read_text(encoding="utf-8") == "name: etcd-events\n"


def test_render_in_place(tmp_path: Path) -> None:
    path = tmp_path / "skydns-svc.yaml"
    path.write_text("clusterIP: {{ pillar['dns_server'] }}\n", encoding="utf-8")

    table = TokenTable(pillar={"dns_server": "10.0.0.10"})
    result = ManifestTemplater().render_in_place(path, table)

    assert result.changed is True
    assert path.read_text(encoding="utf-8") == "clusterIP: 10.0.0.10\n"


def test_missing_template_raises(tmp_path: Path) -> None:
    with pytest.raises(ManifestError, match="Cannot read manifest template"):
        ManifestTemplater().install(tmp_path / "absent.manifest", tmp_path, TokenTable())


def test_copy_places_file_verbatim(tmp_path: Path) -> None:
    source = tmp_path / "glbc.manifest"
    source.write_text("# kept verbatim {{ token }}\n", encoding="utf-8")

    result = ManifestTemplater().copy(source, tmp_path / "manifests")

    assert result.destination.read_text(encoding="utf-8") == "# kept verbatim {{ token }}\n"
    with pytest.raises(ManifestError):
        ManifestTemplater().copy(tmp_path / "absent.yaml", tmp_path / "manifests")
