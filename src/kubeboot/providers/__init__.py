"""Provider interfaces for kubeboot."""
from __future__ import annotations

from .docker import DockerProvider
from .metadata import MetadataClient, MetadataError
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "DockerProvider",
    "MetadataClient",
    "MetadataError",
    "SystemdError",
    "SystemdProvider",
]
