"""Load the role's container images from tarballs shipped on the node image."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .commands import CommandError
from .providers.docker import DockerProvider
from .retry import RetryExecutor, RetryExhaustedError, RetryPolicy
from .role import Role

LOGGER = logging.getLogger(__name__)

CONTROL_PLANE_IMAGES = ("kube-apiserver", "kube-controller-manager", "kube-scheduler")
WORKER_IMAGES = ("kube-proxy",)


class ImageLoadError(RuntimeError):
    """Raised when an image cannot be loaded after every permitted attempt."""


def images_for(role: Role) -> tuple[str, ...]:
    """Return the image names a node of *role* needs."""
    return CONTROL_PLANE_IMAGES if role.is_control_plane else WORKER_IMAGES


def read_docker_tag(docker_files: Path, image: str) -> str:
    """Return the tag recorded in ``<image>.docker_tag``."""
    path = docker_files / f"{image}.docker_tag"
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ImageLoadError(f"Cannot read docker tag for {image} from {path}: {exc}") from exc


@dataclass(slots=True)
class ImageLoadResult:
    """Images loaded and the attempts each one took."""

    attempts: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class ImageLoader:
    """Load image tarballs with a bounded retry per image."""

    docker: DockerProvider
    docker_files: Path
    policy: RetryPolicy
    executor: RetryExecutor | None = None

    def tarball(self, image: str) -> Path:
        """Return the tarball path for *image*."""
        return self.docker_files / f"{image}.tar"

    def load(self, role: Role) -> ImageLoadResult:
        """Load every image *role* requires, in order."""
        result = ImageLoadResult()
        LOGGER.info("Start loading kube-system docker images")
        for image in images_for(role):
            result.attempts[image] = self.load_one(image)
        return result

    def load_one(self, image: str) -> int:
        """Load a single image; return the number of attempts used."""
        tarball = self.tarball(image)
        executor = self.executor or RetryExecutor(self.policy, retry_on=(CommandError,))
        LOGGER.info("Try to load docker image file %s", tarball)
        try:
            outcome = executor.run(
                lambda timeout: self.docker.load_image(tarball, timeout=timeout),
                description=f"docker load {tarball.name}",
            )
        except RetryExhaustedError as exc:
            raise ImageLoadError(
                f"Fail to load docker image file {tarball} after {exc.attempts} attempts: "
                f"{exc.error}"
            ) from exc
        return outcome.attempts

    def docker_tag(self, image: str) -> str:
        """Return the tag for *image* recorded next to its tarball."""
        return read_docker_tag(self.docker_files, image)


__all__ = [
    "CONTROL_PLANE_IMAGES",
    "ImageLoadError",
    "ImageLoadResult",
    "ImageLoader",
    "WORKER_IMAGES",
    "images_for",
    "read_docker_tag",
]
