"""Node role resolution."""
from __future__ import annotations

from enum import Enum

from .config import Configuration

ROLE_VARIABLE = "KUBERNETES_MASTER"


class Role(str, Enum):
    """Which branch of the pipeline a node runs."""

    CONTROL_PLANE = "control-plane"
    WORKER = "worker"

    @property
    def is_control_plane(self) -> bool:
        """Return True for the control-plane role."""
        return self is Role.CONTROL_PLANE


def resolve_role(config: Configuration) -> Role:
    """Return the role encoded in *config*; anything but ``true`` means worker."""
    if config.is_true(ROLE_VARIABLE):
        return Role.CONTROL_PLANE
    return Role.WORKER


__all__ = ["ROLE_VARIABLE", "Role", "resolve_role"]
