"""Credential provisioning for control-plane and worker hosts.

Certificates, keys and the CSV auth files are *write-once*: after the first
boot they live on the persistent disk and are never touched again, so an
upgrade or a reboot cannot rotate credentials behind the cluster's back.
Kubeconfigs, webhook configs and the cloud-provider config are regenerated
on every run from the current kube-env.
"""
from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from .config import Configuration, PathsConfig
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

SERVER_MATERIAL = (
    ("CA_CERT", "ca.crt", 0o644),
    ("MASTER_CERT", "server.cert", 0o644),
    ("MASTER_KEY", "server.key", 0o600),
)
CLOUD_CONFIG_NAME = "gce.conf"
AUTHN_WEBHOOK_NAME = "gcp_authn.config"
AUTHZ_WEBHOOK_NAME = "gcp_authz.config"


class CredentialError(RuntimeError):
    """Raised when credential material in the kube-env cannot be decoded or written."""


class PublicKeyProtocol(Protocol):
    def public_bytes(
        self,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        ...


class PrivateKeyProtocol(Protocol):
    def public_key(self) -> PublicKeyProtocol:
        ...


@dataclass(slots=True)
class CredentialReport:
    """Files written, preserved or removed while provisioning credentials."""

    written: list[Path] = field(default_factory=list)
    preserved: list[Path] = field(default_factory=list)
    removed: list[Path] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> int:
        return len(self.written) + len(self.removed)

    def record(self, path: Path, changed: bool) -> None:
        (self.written if changed else self.preserved).append(path)


@dataclass(slots=True)
class CredentialProvisioner:
    """Write credential files and kubeconfigs for the node's role."""

    config: Configuration
    paths: PathsConfig
    templates: TemplateEngine

    @property
    def cloud_config_path(self) -> Path:
        return self.paths.etc_dir / CLOUD_CONFIG_NAME

    @property
    def kubelet_kubeconfig(self) -> Path:
        return self.paths.kubelet_dir / "kubeconfig"

    @property
    def kube_proxy_kubeconfig(self) -> Path:
        return self.paths.kube_proxy_dir / "kubeconfig"

    # ------------------------------------------------------------------
    # Control plane

    def create_master_auth(self, report: CredentialReport | None = None) -> CredentialReport:
        """Create the API server's credential files and generated configs."""
        report = report or CredentialReport()
        auth_dir = self.paths.auth_dir
        LOGGER.info("Creating master auth files in %s", auth_dir)
        auth_dir.mkdir(parents=True, exist_ok=True)

        ca_path = auth_dir / "ca.crt"
        if not ca_path.exists() and self.config.all_set(*(key for key, _, _ in SERVER_MATERIAL)):
            for key, name, mode in SERVER_MATERIAL:
                data = _decode(key, self.config[key])
                report.record(auth_dir / name, _write_once(auth_dir / name, data, mode))
            report.warnings.extend(self.verify_server_material())

        path = auth_dir / "basic_auth.csv"
        if path.exists():
            report.preserved.append(path)
        else:
            password = self.config.require("KUBE_PASSWORD")
            user = self.config.require("KUBE_USER")
            basic_auth = f"{password},{user},admin\n"
            report.record(path, _write_once(path, basic_auth.encode("utf-8"), 0o600))

        path = auth_dir / "known_tokens.csv"
        if path.exists():
            report.preserved.append(path)
        else:
            rows = [
                f"{self.config.require('KUBE_BEARER_TOKEN')},admin,admin",
                f"{self.config.require('KUBELET_TOKEN')},kubelet,kubelet",
                f"{self.config.require('KUBE_PROXY_TOKEN')},kube_proxy,kube_proxy",
            ]
            tokens = ("\n".join(rows) + "\n").encode("utf-8")
            report.record(path, _write_once(path, tokens, 0o600))

        self.write_cloud_config(report)
        self.write_webhook_configs(report)
        for warning in report.warnings:
            LOGGER.warning(warning)
        return report

    def write_cloud_config(self, report: CredentialReport | None = None) -> CredentialReport:
        """Write the cloud-provider config, or remove it when it is not fully specified."""
        report = report or CredentialReport()
        path = self.cloud_config_path
        if not self.config.cloud_config_enabled:
            if path.exists():
                path.unlink()
                report.removed.append(path)
            return report
        context = {
            "token_url": self.config["TOKEN_URL"],
            "token_body": self.config["TOKEN_BODY"],
            "project_id": self.config["PROJECT_ID"],
            "network_name": self.config["NODE_NETWORK"],
            "node_tags": self.config.value("NODE_INSTANCE_PREFIX"),
            "multizone": self.config.value("MULTIZONE"),
        }
        changed = self.templates.render_to_path("auth/gce.conf.j2", path, context, mode=0o644)
        report.record(path, changed)
        return report

    def write_webhook_configs(self, report: CredentialReport | None = None) -> CredentialReport:
        """Write the authentication/authorization webhook configs that are enabled."""
        report = report or CredentialReport()
        for variable, name, cluster in (
            ("GCP_AUTHN_URL", AUTHN_WEBHOOK_NAME, "gcp-authentication-server"),
            ("GCP_AUTHZ_URL", AUTHZ_WEBHOOK_NAME, "gcp-authorization-server"),
        ):
            if not self.config.is_set(variable):
                continue
            path = self.paths.etc_dir / name
            changed = self.templates.render_to_path(
                "auth/webhook.j2",
                path,
                {"cluster_name": cluster, "server": self.config[variable]},
                mode=0o644,
            )
            report.record(path, changed)
        return report

    def create_master_kubelet_auth(
        self, report: CredentialReport | None = None
    ) -> CredentialReport:
        """Write the agent kubeconfig on the control plane when its credentials exist."""
        report = report or CredentialReport()
        if self.config.all_set("KUBELET_APISERVER", "KUBELET_CERT", "KUBELET_KEY"):
            self.create_kubelet_kubeconfig(report)
        else:
            LOGGER.info("Agent credentials not provided; control-plane agent runs standalone.")
        return report

    # ------------------------------------------------------------------
    # Kubeconfigs

    def create_kubelet_kubeconfig(
        self, report: CredentialReport | None = None
    ) -> CredentialReport:
        """Write the agent's client-certificate kubeconfig."""
        report = report or CredentialReport()
        ca_data = self.config.value("KUBELET_CA_CERT") or self.config.require("CA_CERT")
        changed = self._write_kubeconfig(
            self.kubelet_kubeconfig,
            user_name="kubelet",
            credentials=[
                ("client-certificate-data", self.config.require("KUBELET_CERT")),
                ("client-key-data", self.config.require("KUBELET_KEY")),
            ],
            ca_data=ca_data,
        )
        report.record(self.kubelet_kubeconfig, changed)
        return report

    def create_kube_proxy_kubeconfig(
        self, report: CredentialReport | None = None
    ) -> CredentialReport:
        """Write the proxy's token kubeconfig."""
        report = report or CredentialReport()
        changed = self._write_kubeconfig(
            self.kube_proxy_kubeconfig,
            user_name="kube-proxy",
            credentials=[("token", self.config.require("KUBE_PROXY_TOKEN"))],
            ca_data=self.config.require("CA_CERT"),
        )
        report.record(self.kube_proxy_kubeconfig, changed)
        return report

    def _write_kubeconfig(
        self,
        path: Path,
        *,
        user_name: str,
        credentials: list[tuple[str, str]],
        ca_data: str,
    ) -> bool:
        LOGGER.info("Creating %s kubeconfig file %s", user_name, path)
        return self.templates.render_to_path(
            "kubeconfig/client.j2",
            path,
            {"user_name": user_name, "credentials": credentials, "ca_data": ca_data},
            mode=0o600,
        )

    # ------------------------------------------------------------------
    # Verification

    def verify_server_material(self) -> list[str]:
        """Return warnings about the server certificate/key pair on disk."""
        cert_path = self.paths.auth_dir / "server.cert"
        key_path = self.paths.auth_dir / "server.key"
        if not (cert_path.exists() and key_path.exists()):
            return []
        try:
            certificate = _load_certificate(cert_path)
        except (OSError, ValueError) as exc:
            return [f"Server certificate {cert_path} cannot be parsed: {exc}"]
        try:
            private_key = _load_private_key(key_path)
        except (OSError, ValueError, TypeError, UnsupportedAlgorithm) as exc:
            return [f"Server key {key_path} cannot be parsed: {exc}"]
        if not _public_keys_match(certificate, private_key):
            return [f"Server key {key_path} does not match certificate {cert_path}."]
        return []


def _decode(key: str, value: str) -> bytes:
    try:
        return base64.b64decode(value)
    except (binascii.Error, ValueError) as exc:
        raise CredentialError(f"{key} is not valid base64: {exc}") from exc


def _write_once(path: Path, data: bytes, mode: int) -> bool:
    """Create *path* with *data*; return False when it already exists."""
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    except FileExistsError:
        return False
    except OSError as exc:
        raise CredentialError(f"Cannot create {path}: {exc}") from exc
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
    os.chmod(path, mode)
    return True


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _load_private_key(path: Path) -> PrivateKeyProtocol:
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    try:
        key_public = private_key.public_key()
    except AttributeError:
        return False
    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = key_public.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


__all__ = ["CredentialError", "CredentialProvisioner", "CredentialReport"]
