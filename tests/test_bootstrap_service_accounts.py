"""Unit tests for service account helpers."""
from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from kubeboot.bootstrap import service_accounts
from kubeboot.bootstrap.service_accounts import (
    ServiceAccountSpec,
    ensure_service_account,
    plan_service_account,
)

from conftest import FakeRunner


def _raise_key_error(*args: object, **kwargs: object) -> None:
    raise KeyError


def _existing_user(monkeypatch: pytest.MonkeyPatch, *, home: str, group: str = "etcd") -> None:
    pw_entry = SimpleNamespace(pw_uid=998, pw_gid=998, pw_dir=home, pw_shell="/sbin/nologin")
    monkeypatch.setattr(service_accounts.pwd, "getpwnam", lambda name: pw_entry)
    monkeypatch.setattr(
        service_accounts.grp, "getgrgid", lambda gid: SimpleNamespace(gr_name=group)
    )


def test_plan_creates_missing_user(monkeypatch: pytest.MonkeyPatch) -> None:
    """Plan should request user creation when the account is missing."""
    monkeypatch.setattr(service_accounts.pwd, "getpwnam", _raise_key_error)

    spec = ServiceAccountSpec(name="etcd", home=Path("/var/etcd"))
    plan = plan_service_account(spec)

    assert [action.kind for action in plan.actions] == ["create-user"]
    assert plan.actions[0].command == ["useradd", "-s", "/sbin/nologin", "-d", "/var/etcd", "etcd"]
    assert plan.warnings == []


def test_ensure_runs_useradd(monkeypatch: pytest.MonkeyPatch, runner: FakeRunner) -> None:
    monkeypatch.setattr(service_accounts.pwd, "getpwnam", _raise_key_error)

    ensure_service_account(ServiceAccountSpec(name="etcd", system=True), runner=runner)

    assert runner.calls == [["useradd", "--system", "-s", "/sbin/nologin", "etcd"]]


def test_plan_no_actions_when_account_matches(
    monkeypatch: pytest.MonkeyPatch, runner: FakeRunner
) -> None:
    """An existing matching account needs no action."""
    _existing_user(monkeypatch, home="/var/etcd")

    plan = ensure_service_account(
        ServiceAccountSpec(name="etcd", home=Path("/var/etcd"), group="etcd"), runner=runner
    )

    assert plan.actions == []
    assert plan.warnings == []
    assert runner.calls == []


def test_plan_warns_on_mismatched_home(monkeypatch: pytest.MonkeyPatch) -> None:
    """An existing account with another home directory is reported, not changed."""
    _existing_user(monkeypatch, home="/home/etcd")

    plan = plan_service_account(ServiceAccountSpec(name="etcd", home=Path("/var/etcd")))

    assert plan.actions == []
    assert plan.warnings == ["User 'etcd' home '/home/etcd' differs from desired '/var/etcd'."]
