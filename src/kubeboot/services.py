"""Start the node's local processes.

The agent (kubelet) is a systemd unit configured through ``/etc/default``.
Every other process is a static workload manifest: its flags are assembled
from the kube-env, substituted into the template shipped on the node image
and the result is placed in the directory the agent watches.
"""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from .config import BootSettings, Configuration, PathsConfig
from .images import read_docker_tag
from .manifests import InstalledManifest, ManifestTemplater, TokenTable
from .providers.metadata import MetadataClient
from .providers.systemd import SystemdProvider
from .role import Role

LOGGER = logging.getLogger(__name__)

DEFAULT_DOCKER_REGISTRY = "gcr.io/google_containers"
DEFAULT_LOG_LEVEL = "--v=2"
SECURE_PORT = "443"
INSECURE_MASTER_ADDRESS = "127.0.0.1:8080"
STANDALONE_POD_CIDR = "10.123.45.0/30"
HAIRPIN_MODES = frozenset({"promiscuous-bridge", "hairpin-veth", "none"})
LOGGING_MANIFESTS = {"gcp": "fluentd-gcp.yaml", "elasticsearch": "fluentd-es.yaml"}
LEGACY_ETCD_HOST_PATH = "/mnt/master-pd/var/etcd"


@dataclass(frozen=True, slots=True)
class EtcdInstance:
    """Parameters distinguishing the main store from the events store."""

    name: str
    suffix: str
    port: int
    server_port: int
    cpulimit: str


ETCD_INSTANCES = (
    EtcdInstance("etcd", "", 4001, 2380, "200m"),
    EtcdInstance("etcd-events", "-events", 4002, 2381, "100m"),
)


class FlagSet:
    """Ordered command-line fragments rendered as a single string."""

    def __init__(self, *leading: str) -> None:
        self._parts: list[str] = [part for part in leading if part]

    def add(self, flag: str) -> FlagSet:
        if flag:
            self._parts.append(flag)
        return self

    def add_if(self, condition: bool, flag: str) -> FlagSet:
        if condition:
            self.add(flag)
        return self

    def __iter__(self) -> Iterator[str]:
        return iter(self._parts)

    def render(self) -> str:
        return " ".join(self._parts)

    def __str__(self) -> str:
        return self.render()


def _volume(name: str, path: Path) -> str:
    return f'{{"name": "{name}","hostPath": {{"path": "{path}"}}}},'


def _mount(name: str, path: Path, *, read_only: bool) -> str:
    flag = "true" if read_only else "false"
    return f'{{"name": "{name}","mountPath": "{path}", "readOnly": {flag}}},'


@dataclass(frozen=True, slots=True)
class ManifestVariables:
    """Values shared by several control-plane manifests."""

    cloud_config_volume: str
    cloud_config_mount: str
    docker_registry: str

    @classmethod
    def from_config(cls, config: Configuration, paths: PathsConfig) -> ManifestVariables:
        volume = mount = ""
        if config.cloud_config_enabled:
            cloud_config = paths.etc_dir / "gce.conf"
            volume = _volume("cloudconfigmount", cloud_config)
            mount = _mount("cloudconfigmount", cloud_config, read_only=True)
        return cls(
            cloud_config_volume=volume,
            cloud_config_mount=mount,
            docker_registry=config.value("KUBE_DOCKER_REGISTRY", DEFAULT_DOCKER_REGISTRY),
        )


# ----------------------------------------------------------------------------
# Flag assembly


def assemble_kubelet_flags(config: Configuration, role: Role, paths: PathsConfig) -> str:
    """Return the agent's command line."""
    flags = FlagSet(
        config.value("KUBELET_TEST_LOG_LEVEL", DEFAULT_LOG_LEVEL),
        config.value("KUBELET_TEST_ARGS"),
    )
    flags.add("--allow-privileged=true")
    flags.add("--babysit-daemons=true")
    flags.add("--cgroup-root=/")
    flags.add("--cloud-provider=gce")
    flags.add(f"--cluster-dns={config.require('DNS_SERVER_IP')}")
    flags.add(f"--cluster-domain={config.require('DNS_DOMAIN')}")
    flags.add(f"--config={paths.manifests_dir}")
    flags.add("--kubelet-cgroups=/kubelet")
    flags.add("--system-cgroups=/system")
    flags.add_if(config.is_set("KUBELET_PORT"), f"--port={config.value('KUBELET_PORT')}")

    if role.is_control_plane:
        flags.add("--enable-debugging-handlers=false")
        flags.add("--hairpin-mode=none")
        if config.all_set("KUBELET_APISERVER", "KUBELET_CERT", "KUBELET_KEY"):
            flags.add(f"--api-servers=https://{config['KUBELET_APISERVER']}")
            flags.add("--register-schedulable=false")
            flags.add("--reconcile-cidr=false")
            flags.add(f"--pod-cidr={STANDALONE_POD_CIDR}")
        else:
            flags.add(f"--pod-cidr={config.require('MASTER_IP_RANGE')}")
    else:
        flags.add("--enable-debugging-handlers=true")
        flags.add(f"--api-servers=https://{config.require('KUBERNETES_MASTER_NAME')}")
        hairpin = config.value("HAIRPIN_MODE")
        flags.add_if(hairpin in HAIRPIN_MODES, f"--hairpin-mode={hairpin}")

    if config.is_true("ENABLE_MANIFEST_URL"):
        flags.add(f"--manifest-url={config.value('MANIFEST_URL')}")
        flags.add(f"--manifest-url-header={config.value('MANIFEST_URL_HEADER')}")
    if config.is_set("ENABLE_CUSTOM_METRICS"):
        flags.add(f"--enable-custom-metrics={config['ENABLE_CUSTOM_METRICS']}")
    if config.is_set("NODE_LABELS"):
        flags.add(f"--node-labels={config['NODE_LABELS']}")
    if config.is_true("ALLOCATE_NODE_CIDRS"):
        flags.add("--configure-cbr0=true")
    return flags.render()


def assemble_apiserver_params(
    config: Configuration,
    paths: PathsConfig,
    *,
    external_ip: str | None = None,
) -> str:
    """Return the API server's command line.

    *external_ip* is required when the cloud config is active.
    """
    auth = paths.auth_dir
    params = FlagSet(
        config.value("API_SERVER_TEST_LOG_LEVEL", DEFAULT_LOG_LEVEL),
        config.value("APISERVER_TEST_ARGS"),
    )
    params.add("--address=127.0.0.1")
    params.add("--allow-privileged=true")
    params.add(f"--authorization-policy-file={auth / 'abac-authz-policy.jsonl'}")
    params.add(f"--basic-auth-file={auth / 'basic_auth.csv'}")
    params.add("--cloud-provider=gce")
    params.add(f"--client-ca-file={auth / 'ca.crt'}")
    params.add("--etcd-servers=http://127.0.0.1:4001")
    params.add("--etcd-servers-overrides=/events#http://127.0.0.1:4002")
    params.add(f"--secure-port={SECURE_PORT}")
    params.add(f"--tls-cert-file={auth / 'server.cert'}")
    params.add(f"--tls-private-key-file={auth / 'server.key'}")
    params.add(f"--token-auth-file={auth / 'known_tokens.csv'}")
    for variable, flag in (
        ("SERVICE_CLUSTER_IP_RANGE", "--service-cluster-ip-range"),
        ("ADMISSION_CONTROL", "--admission-control"),
        ("KUBE_APISERVER_REQUEST_TIMEOUT", "--min-request-timeout"),
        ("RUNTIME_CONFIG", "--runtime-config"),
    ):
        params.add_if(config.is_set(variable), f"{flag}={config.value(variable)}")
    if config.cloud_config_enabled:
        if not external_ip:
            raise ValueError("external_ip is required when the cloud config is enabled")
        params.add(f"--advertise-address={external_ip}")
        params.add(f"--cloud-config={paths.etc_dir / 'gce.conf'}")
        params.add(f"--ssh-user={config.require('PROXY_SSH_USER')}")
        params.add(f"--ssh-keyfile={paths.sshproxy_dir / '.sshkeyfile'}")
    if config.is_set("GCP_AUTHN_URL"):
        params.add(
            f"--authentication-token-webhook-config-file={paths.etc_dir / 'gcp_authn.config'}"
        )
    if config.is_set("GCP_AUTHZ_URL"):
        params.add("--authorization-mode=ABAC,Webhook")
        params.add(f"--authorization-webhook-config-file={paths.etc_dir / 'gcp_authz.config'}")
    else:
        params.add("--authorization-mode=ABAC")
    return params.render()


def assemble_controller_manager_params(config: Configuration, paths: PathsConfig) -> str:
    """Return the controller manager's command line."""
    params = FlagSet(
        config.value("CONTROLLER_MANAGER_TEST_LOG_LEVEL", DEFAULT_LOG_LEVEL),
        config.value("CONTROLLER_MANAGER_TEST_ARGS"),
    )
    params.add("--cloud-provider=gce")
    params.add(f"--master={INSECURE_MASTER_ADDRESS}")
    params.add(f"--root-ca-file={paths.auth_dir / 'ca.crt'}")
    params.add(f"--service-account-private-key-file={paths.auth_dir / 'server.key'}")
    params.add_if(config.cloud_config_enabled, f"--cloud-config={paths.etc_dir / 'gce.conf'}")
    for variable, flag in (
        ("INSTANCE_PREFIX", "--cluster-name"),
        ("CLUSTER_IP_RANGE", "--cluster-cidr"),
        ("SERVICE_CLUSTER_IP_RANGE", "--service-cluster-ip-range"),
    ):
        params.add_if(config.is_set(variable), f"{flag}={config.value(variable)}")
    params.add_if(config.is_true("ALLOCATE_NODE_CIDRS"), "--allocate-node-cidrs=true")
    params.add_if(
        config.is_set("TERMINATED_POD_GC_THRESHOLD"),
        f"--terminated-pod-gc-threshold={config.value('TERMINATED_POD_GC_THRESHOLD')}",
    )
    return params.render()


# ----------------------------------------------------------------------------
# Starter


@dataclass(slots=True)
class ServiceStarter:
    """Render and place the manifests of the processes a role runs."""

    config: Configuration
    settings: BootSettings
    templater: ManifestTemplater
    systemd: SystemdProvider
    metadata: MetadataClient

    @property
    def paths(self) -> PathsConfig:
        return self.settings.paths

    @property
    def variables(self) -> ManifestVariables:
        return ManifestVariables.from_config(self.config, self.paths)

    def docker_tag(self, image: str) -> str:
        return read_docker_tag(self.paths.docker_files, image)

    def prepare_log_file(self, name: str) -> Path:
        """Create ``<log_dir>/<name>.log`` with mode 0644, owned by root when possible."""
        path = self.paths.log_dir / f"{name}.log"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)
        path.chmod(0o644)
        if os.geteuid() == 0:
            os.chown(path, 0, 0)
        return path

    # ------------------------------------------------------------------
    # Agent

    def start_kubelet(self, role: Role) -> bool:
        """Persist the agent's flags and start its unit; return True when the flags changed."""
        flags = assemble_kubelet_flags(self.config, role, self.paths)
        changed = self.systemd.write_environment("kubelet", "KUBELET_OPTS", flags)
        LOGGER.info("Start kubelet")
        self.systemd.start("kubelet")
        return changed

    # ------------------------------------------------------------------
    # Control plane

    def remove_legacy_etcd(self) -> list[Path]:
        """Delete host-level store installs that predate the static manifests."""
        removed: list[Path] = []
        etc = self.paths.etc_dir
        legacy_dir = etc / "etcd"
        if legacy_dir.is_dir() and not legacy_dir.is_symlink():
            shutil.rmtree(legacy_dir)
            removed.append(legacy_dir)
        for path in (
            self.paths.defaults_dir / "etcd",
            etc / "systemd" / "system" / "etcd.service",
            etc / "init.d" / "etcd",
        ):
            if path.exists() or path.is_symlink():
                path.unlink()
                removed.append(path)
        return removed

    def start_etcd_servers(self) -> list[InstalledManifest]:
        """Place the main and events key-value store manifests."""
        LOGGER.info("Start etcd pods")
        for path in self.remove_legacy_etcd():
            LOGGER.info("Removed legacy etcd install %s", path)
        template = self.paths.gci_manifests / "etcd.manifest"
        rewrites = {LEGACY_ETCD_HOST_PATH: str(self.settings.disk.mount_point / "var" / "etcd")}
        installed: list[InstalledManifest] = []
        for instance in ETCD_INSTANCES:
            self.prepare_log_file(instance.name)
            table = TokenTable(
                {
                    "suffix": instance.suffix,
                    "port": str(instance.port),
                    "server_port": str(instance.server_port),
                    "cpulimit": f'"{instance.cpulimit}"',
                }
            )
            installed.append(
                self.templater.install(
                    template,
                    self.paths.manifests_dir,
                    table,
                    name=f"{instance.name}.manifest",
                    rewrites=rewrites,
                )
            )
        return installed

    def apiserver_tokens(self, *, external_ip: str | None = None) -> TokenTable:
        """Return the token table for the API server manifest."""
        variables = self.variables
        etc = self.paths.etc_dir
        authn_mount = authn_volume = authz_mount = authz_volume = ""
        if self.config.is_set("GCP_AUTHN_URL"):
            authn_mount = _mount(
                "webhookauthnconfigmount", etc / "gcp_authn.config", read_only=False
            )
            authn_volume = _volume("webhookauthnconfigmount", etc / "gcp_authn.config")
        if self.config.is_set("GCP_AUTHZ_URL"):
            authz_mount = _mount("webhookconfigmount", etc / "gcp_authz.config", read_only=False)
            authz_volume = _volume("webhookconfigmount", etc / "gcp_authz.config")
        table = TokenTable(
            {
                "params": assemble_apiserver_params(
                    self.config, self.paths, external_ip=external_ip
                ),
                "srv_kube_path": str(self.paths.auth_dir),
                "srv_sshproxy_path": str(self.paths.sshproxy_dir),
                "cloud_config_mount": variables.cloud_config_mount,
                "cloud_config_volume": variables.cloud_config_volume,
                "secure_port": SECURE_PORT,
                "webhook_authn_config_mount": authn_mount,
                "webhook_authn_config_volume": authn_volume,
                "webhook_config_mount": authz_mount,
                "webhook_config_volume": authz_volume,
            },
            pillar={
                "kube_docker_registry": variables.docker_registry,
                "kube-apiserver_docker_tag": self.docker_tag("kube-apiserver"),
                "allow_privileged": "true",
            },
        )
        return table.disable("additional_cloud_config_mount", "additional_cloud_config_volume")

    def start_kube_apiserver(self) -> InstalledManifest:
        """Place the API server manifest and its authorization policy."""
        LOGGER.info("Start kubernetes api-server")
        self.prepare_log_file("kube-apiserver")
        external_ip = self.metadata.external_ip() if self.config.cloud_config_enabled else None
        table = self.apiserver_tokens(external_ip=external_ip)
        source = self.paths.gci_manifests
        self.templater.copy(source / "abac-authz-policy.jsonl", self.paths.auth_dir)
        return self.templater.install(
            source / "kube-apiserver.manifest", self.paths.manifests_dir, table
        )

    def controller_manager_tokens(self) -> TokenTable:
        """Return the token table for the controller manager manifest."""
        variables = self.variables
        table = TokenTable(
            {
                "params": assemble_controller_manager_params(self.config, self.paths),
                "srv_kube_path": str(self.paths.auth_dir),
                "cloud_config_mount": variables.cloud_config_mount,
                "cloud_config_volume": variables.cloud_config_volume,
            },
            pillar={
                "kube_docker_registry": variables.docker_registry,
                "kube-controller-manager_docker_tag": self.docker_tag("kube-controller-manager"),
            },
        )
        return table.disable("additional_cloud_config_mount", "additional_cloud_config_volume")

    def start_kube_controller_manager(self) -> InstalledManifest:
        LOGGER.info("Start kubernetes controller-manager")
        self.prepare_log_file("kube-controller-manager")
        return self.templater.install(
            self.paths.gci_manifests / "kube-controller-manager.manifest",
            self.paths.manifests_dir,
            self.controller_manager_tokens(),
        )

    def scheduler_tokens(self) -> TokenTable:
        """Return the token table for the scheduler manifest."""
        params = FlagSet(
            self.config.value("SCHEDULER_TEST_LOG_LEVEL", DEFAULT_LOG_LEVEL),
            self.config.value("SCHEDULER_TEST_ARGS"),
        )
        return TokenTable(
            {"params": params.render()},
            pillar={
                "kube_docker_registry": self.variables.docker_registry,
                "kube-scheduler_docker_tag": self.docker_tag("kube-scheduler"),
            },
        )

    def start_kube_scheduler(self) -> InstalledManifest:
        LOGGER.info("Start kubernetes scheduler")
        self.prepare_log_file("kube-scheduler")
        return self.templater.install(
            self.paths.gci_manifests / "kube-scheduler.manifest",
            self.paths.manifests_dir,
            self.scheduler_tokens(),
        )

    def autoscaler_tokens(self) -> TokenTable:
        """Return the token table for the cluster autoscaler manifest."""
        variables = self.variables
        params = FlagSet(self.config.value("AUTOSCALER_MIG_CONFIG"))
        params.add_if(
            self.config.cloud_config_enabled, f"--cloud-config={self.paths.etc_dir / 'gce.conf'}"
        )
        return TokenTable(
            {
                "params": params.render(),
                "cloud_config_mount": variables.cloud_config_mount,
                "cloud_config_volume": variables.cloud_config_volume,
            }
        )

    def start_cluster_autoscaler(self) -> InstalledManifest | None:
        """Place the autoscaler manifest when node autoscaling is enabled."""
        if not self.config.is_true("ENABLE_NODE_AUTOSCALER"):
            return None
        LOGGER.info("Start kubernetes cluster autoscaler")
        self.prepare_log_file("cluster-autoscaler")
        return self.templater.install(
            self.paths.gci_manifests / "cluster-autoscaler.manifest",
            self.paths.manifests_dir,
            self.autoscaler_tokens(),
        )

    def start_lb_controller(self) -> InstalledManifest | None:
        """Place the L7 load-balancing controller manifest when glbc is selected."""
        if self.config.value("ENABLE_L7_LOADBALANCING") != "glbc":
            return None
        LOGGER.info("Starting GCE L7 pod")
        self.prepare_log_file("glbc")
        return self.templater.copy(
            self.paths.gci_manifests / "glbc.manifest", self.paths.manifests_dir
        )

    # ------------------------------------------------------------------
    # Worker

    def kube_proxy_tokens(self) -> TokenTable:
        """Return the token table for the proxy manifest."""
        cluster_cidr = ""
        if self.config.is_set("CLUSTER_IP_RANGE"):
            cluster_cidr = f"--cluster-cidr={self.config['CLUSTER_IP_RANGE']}"
        master = self.config.require("KUBERNETES_MASTER_NAME")
        return TokenTable(
            {
                "kubeconfig": f"--kubeconfig={self.paths.kube_proxy_dir / 'kubeconfig'}",
                "test_args": self.config.value("KUBEPROXY_TEST_ARGS"),
                "cpurequest": "20m",
                "log_level": self.config.value("KUBEPROXY_TEST_LOG_LEVEL", DEFAULT_LOG_LEVEL),
                "api_servers_with_port": f"--master=https://{master}",
                "cluster_cidr": cluster_cidr,
            },
            pillar={
                "kube_docker_registry": self.variables.docker_registry,
                "kube-proxy_docker_tag": self.docker_tag("kube-proxy"),
            },
        )

    def start_kube_proxy(self) -> InstalledManifest:
        LOGGER.info("Start kube-proxy pod")
        self.prepare_log_file("kube-proxy")
        return self.templater.install(
            self.paths.manifests_source / "kube-proxy.manifest",
            self.paths.manifests_dir,
            self.kube_proxy_tokens(),
        )

    def start_registry_proxy(self) -> InstalledManifest | None:
        """Place the registry proxy manifest when the cluster registry is enabled."""
        if not self.config.is_true("ENABLE_CLUSTER_REGISTRY"):
            return None
        return self.templater.copy(
            self.paths.manifests_source / "kube-registry-proxy.yaml", self.paths.manifests_dir
        )

    # ------------------------------------------------------------------
    # Both roles

    def start_fluentd(self) -> InstalledManifest | None:
        """Place the node logging agent manifest for the configured destination."""
        if not self.config.is_true("ENABLE_NODE_LOGGING"):
            return None
        name = LOGGING_MANIFESTS.get(self.config.value("LOGGING_DESTINATION"))
        if name is None:
            LOGGER.info(
                "Node logging enabled without a supported destination (%s); skipping.",
                self.config.value("LOGGING_DESTINATION") or "unset",
            )
            return None
        LOGGER.info("Start fluentd pod")
        return self.templater.copy(self.paths.manifests_source / name, self.paths.manifests_dir)


__all__ = [
    "DEFAULT_DOCKER_REGISTRY",
    "ETCD_INSTANCES",
    "EtcdInstance",
    "FlagSet",
    "ManifestVariables",
    "SECURE_PORT",
    "ServiceStarter",
    "assemble_apiserver_params",
    "assemble_controller_manager_params",
    "assemble_kubelet_flags",
]
