"""Metadata client tests."""
from __future__ import annotations

import urllib.error
import urllib.request

import pytest

from kubeboot.providers.metadata import MetadataClient, MetadataError
from kubeboot.retry import RetryPolicy

URL = "http://metadata.invalid/external-ip"


class Responses:
    """Fetcher returning (or raising) queued responses in order."""

    def __init__(self, *responses: bytes | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[urllib.request.Request] = []

    def __call__(self, request: urllib.request.Request, timeout: float | None) -> bytes:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def _client(fetch: Responses) -> MetadataClient:
    return MetadataClient(
        URL,
        policy=RetryPolicy(max_attempts=3, delay=1.0, timeout=5.0),
        fetch=fetch,
        sleep=lambda _: None,
    )


def test_external_ip_sends_metadata_header() -> None:
    fetch = Responses(b"203.0.113.7\n")

    assert _client(fetch).external_ip() == "203.0.113.7"
    assert fetch.requests[0].get_header("Metadata-flavor") == "Google"


def test_transient_errors_are_retried() -> None:
    fetch = Responses(OSError("connection refused"), b"", b"203.0.113.7")

    assert _client(fetch).external_ip() == "203.0.113.7"
    assert len(fetch.requests) == 3


def test_persistent_http_error_raises() -> None:
    error = urllib.error.HTTPError(
        URL, 503, "unavailable", hdrs=None, fp=None  # type: ignore[arg-type]
    )
    fetch = Responses(error)

    with pytest.raises(MetadataError, match="HTTP 503"):
        _client(fetch).external_ip()

    assert len(fetch.requests) == 3
