"""Client for the instance metadata service."""
from __future__ import annotations

import logging
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass, field

from ..retry import RetryExecutor, RetryExhaustedError, RetryPolicy

LOGGER = logging.getLogger(__name__)

METADATA_HEADERS = {"Metadata-Flavor": "Google"}

Fetcher = Callable[[urllib.request.Request, float | None], bytes]


class MetadataError(RuntimeError):
    """Raised when the metadata service cannot answer a query."""


def _urlopen(request: urllib.request.Request, timeout: float | None) -> bytes:
    with urllib.request.urlopen(request, timeout=timeout) as resp:  # noqa: S310
        return resp.read()


@dataclass(slots=True)
class MetadataClient:
    """Query the metadata server with a bounded number of attempts."""

    url: str
    policy: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(max_attempts=5, delay=3.0, timeout=10.0)
    )
    fetch: Fetcher = _urlopen
    sleep: Callable[[float], None] | None = None

    def external_ip(self) -> str:
        """Return the instance's external IP address."""
        request = urllib.request.Request(self.url, headers=METADATA_HEADERS)
        executor = RetryExecutor(self.policy, retry_on=(OSError, MetadataError))
        if self.sleep is not None:
            executor.sleep = self.sleep

        def _attempt(timeout: float | None) -> str:
            try:
                body = self.fetch(request, timeout)
            except urllib.error.HTTPError as exc:
                raise MetadataError(f"{self.url} returned HTTP {exc.code}") from exc
            address = body.decode("utf-8").strip()
            if not address:
                raise MetadataError(f"{self.url} returned an empty response")
            return address

        try:
            outcome = executor.run(_attempt, description="metadata external-ip lookup")
        except RetryExhaustedError as exc:
            raise MetadataError(str(exc)) from exc
        LOGGER.info("External IP %s (attempt %d)", outcome.value, outcome.attempts)
        return outcome.value


__all__ = ["METADATA_HEADERS", "MetadataClient", "MetadataError"]
