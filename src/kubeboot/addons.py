"""Optional cluster addons placed for the addon manager.

Each enabled addon's manifests are copied from the node image into
``<kubernetes_dir>/<category>/<addon>``; a few carry placeholders that are
filled in after the copy. The addon manager's own manifest is placed last so
it starts with every addon directory already populated.
"""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .config import ConfigError, Configuration, PathsConfig
from .manifests import InstalledManifest, ManifestError, ManifestTemplater, TokenTable

LOGGER = logging.getLogger(__name__)

ADDON_PATTERNS = ("*.yaml", "*.json", "*.yaml.in")
MONITORING_BACKENDS = ("influxdb", "google", "standalone", "googleinfluxdb")

BASE_METRICS_MEMORY = "200Mi"
BASE_EVENTER_MEMORY = "200Mi"
METRICS_MEMORY_PER_NODE = 4
EVENTER_MEMORY_PER_NODE = 500


@dataclass(frozen=True, slots=True)
class MonitoringResources:
    """Memory requests for the metrics pipeline, scaled by cluster size."""

    metrics_memory: str = BASE_METRICS_MEMORY
    eventer_memory: str = BASE_EVENTER_MEMORY
    base_metrics_memory: str = BASE_METRICS_MEMORY
    base_eventer_memory: str = BASE_EVENTER_MEMORY
    metrics_memory_per_node: int = METRICS_MEMORY_PER_NODE
    eventer_memory_per_node: int = EVENTER_MEMORY_PER_NODE

    def tokens(self) -> TokenTable:
        return TokenTable(
            {
                "base_metrics_memory": self.base_metrics_memory,
                "metrics_memory": self.metrics_memory,
                "base_eventer_memory": self.base_eventer_memory,
                "eventer_memory": self.eventer_memory,
                "metrics_memory_per_node": str(self.metrics_memory_per_node),
                "eventer_memory_per_node": str(self.eventer_memory_per_node),
            }
        )


def compute_monitoring_resources(num_nodes: str | int | None) -> MonitoringResources:
    """Scale the metrics and eventer memory for *num_nodes* nodes.

    With no usable node count the base values are kept.
    """
    if num_nodes is None or num_nodes == "":
        return MonitoringResources()
    try:
        count = int(num_nodes)
    except ValueError as exc:
        raise ConfigError(f"NUM_NODES must be an integer, got {num_nodes!r}.") from exc
    if count < 1:
        return MonitoringResources()
    extra = count - 1
    return MonitoringResources(
        metrics_memory=f"{extra * METRICS_MEMORY_PER_NODE + 200}Mi",
        eventer_memory=f"{extra * EVENTER_MEMORY_PER_NODE + 200 * 1024}Ki",
    )


def chown_root(path: Path) -> None:
    """Give root ownership of *path* and everything below it when running as root."""
    if os.geteuid() != 0:
        return
    os.chown(path, 0, 0)
    for dirpath, dirnames, filenames in os.walk(path):
        for name in (*dirnames, *filenames):
            os.chown(os.path.join(dirpath, name), 0, 0)


@dataclass(slots=True)
class AddonReport:
    """Addons set up during a run."""

    addons: list[str] = field(default_factory=list)
    rendered: list[InstalledManifest] = field(default_factory=list)
    manager: InstalledManifest | None = None


@dataclass(slots=True)
class AddonInstaller:
    """Copy and render the manifests of every enabled addon."""

    config: Configuration
    paths: PathsConfig
    templater: ManifestTemplater
    chown: Callable[[Path], None] = chown_root

    def setup_addon_manifests(self, category: str, addon: str) -> Path:
        """Copy *addon*'s manifests into ``<kubernetes_dir>/<category>/<addon>``."""
        source = self.paths.gci_manifests / addon
        destination = self.paths.kubernetes_dir / category / addon
        destination.mkdir(parents=True, exist_ok=True)
        for pattern in ADDON_PATTERNS:
            for item in sorted(source.glob(pattern)):
                if item.is_file():
                    shutil.copyfile(item, destination / item.name)
        self.chown(destination)
        destination.chmod(0o755)
        for item in destination.iterdir():
            if item.is_file():
                item.chmod(0o644)
        return destination

    def install(self) -> AddonReport:
        """Set up every enabled addon and place the addon manager manifest."""
        report = AddonReport()
        LOGGER.info("Prepare kube-addons manifests and start kube addon manager")
        monitoring = self.config.value("ENABLE_CLUSTER_MONITORING")
        if monitoring in MONITORING_BACKENDS:
            report.rendered.append(self.install_monitoring(monitoring))
            report.addons.append(f"cluster-monitoring/{monitoring}")
        if self.config.value("ENABLE_L7_LOADBALANCING") == "glbc":
            self.setup_addon_manifests("addons", "cluster-loadbalancing/glbc")
            report.addons.append("cluster-loadbalancing/glbc")
        if self.config.is_true("ENABLE_CLUSTER_DNS"):
            report.rendered.extend(self.install_dns())
            report.addons.append("dns")
        if self.config.is_true("ENABLE_CLUSTER_REGISTRY"):
            report.rendered.extend(self.install_registry())
            report.addons.append("registry")
        if (
            self.config.is_true("ENABLE_NODE_LOGGING")
            and self.config.value("LOGGING_DESTINATION") == "elasticsearch"
            and self.config.is_true("ENABLE_CLUSTER_LOGGING")
        ):
            self.setup_addon_manifests("addons", "fluentd-elasticsearch")
            report.addons.append("fluentd-elasticsearch")
        if self.config.is_true("ENABLE_CLUSTER_UI"):
            self.setup_addon_manifests("addons", "dashboard")
            report.addons.append("dashboard")
        if "LimitRanger" in self.config.value("ADMISSION_CONTROL"):
            self.setup_addon_manifests("admission-controls", "limit-range")
            report.addons.append("limit-range")
        report.manager = self.place_addon_manager()
        return report

    def install_monitoring(self, backend: str) -> InstalledManifest:
        """Set up the metrics pipeline and size its memory requests."""
        directory = self.setup_addon_manifests("addons", f"cluster-monitoring/{backend}")
        name = (
            "heapster-controller-combined.yaml"
            if backend == "googleinfluxdb"
            else "heapster-controller.yaml"
        )
        resources = compute_monitoring_resources(self.config.value("NUM_NODES") or None)
        return self.templater.render_in_place(directory / name, resources.tokens())

    def install_dns(self) -> list[InstalledManifest]:
        directory = self.setup_addon_manifests("addons", "dns")
        table = TokenTable(
            pillar={
                "dns_replicas": self.config.value("DNS_REPLICAS"),
                "dns_domain": self.config.value("DNS_DOMAIN"),
                "dns_server": self.config.value("DNS_SERVER_IP"),
            }
        )
        return [
            self.templater.render_in_place(_promote_stub(directory, stub), table)
            for stub in ("skydns-rc.yaml.in", "skydns-svc.yaml.in")
        ]

    def install_registry(self) -> list[InstalledManifest]:
        directory = self.setup_addon_manifests("addons", "registry")
        table = TokenTable(
            pillar={
                "cluster_registry_disk_size": self.config.value("CLUSTER_REGISTRY_DISK_SIZE"),
                "cluster_registry_disk_name": self.config.value("CLUSTER_REGISTRY_DISK"),
            }
        )
        return [
            self.templater.render_in_place(_promote_stub(directory, stub), table)
            for stub in ("registry-pv.yaml.in", "registry-pvc.yaml.in")
        ]

    def place_addon_manager(self) -> InstalledManifest:
        """Place the addon manager's static manifest."""
        return self.templater.copy(
            self.paths.gci_manifests / "kube-addon-manager.yaml", self.paths.manifests_dir
        )


def _promote_stub(directory: Path, stub: str) -> Path:
    """Rename ``<name>.yaml.in`` to ``<name>.yaml`` inside *directory*."""
    source = directory / stub
    target = directory / stub.removesuffix(".in")
    if not source.exists():
        if target.exists():
            return target
        raise ManifestError(f"Addon manifest {source} does not exist.")
    os.replace(source, target)
    return target


__all__ = [
    "AddonInstaller",
    "AddonReport",
    "MONITORING_BACKENDS",
    "MonitoringResources",
    "compute_monitoring_resources",
]
