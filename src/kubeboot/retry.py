"""Bounded retry execution for fallible external operations."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    """Raised when every permitted attempt of an operation failed."""

    def __init__(self, description: str, attempts: int, error: BaseException | None) -> None:
        detail = f": {error}" if error is not None else ""
        super().__init__(f"{description} failed after {attempts} attempts{detail}")
        self.description = description
        self.attempts = attempts
        self.error = error


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Attempt budget, inter-attempt delay and per-attempt timeout (seconds)."""

    max_attempts: int = 5
    delay: float = 5.0
    timeout: float | None = 30.0


@dataclass(frozen=True, slots=True)
class RetryOutcome(Generic[T]):
    """Value returned by a successful attempt and how many attempts it took."""

    value: T
    attempts: int


@dataclass(slots=True)
class RetryExecutor:
    """Run an operation until it succeeds or the policy's attempts run out.

    The operation receives the per-attempt timeout and is expected to enforce
    it (for example through ``subprocess.run(timeout=...)``). Only exceptions
    listed in ``retry_on`` trigger another attempt; anything else propagates
    immediately.
    """

    policy: RetryPolicy
    retry_on: tuple[type[BaseException], ...] = (Exception,)
    sleep: Callable[[float], None] = time.sleep

    def run(self, operation: Callable[[float | None], T], *, description: str) -> RetryOutcome[T]:
        """Execute *operation*, raising :class:`RetryExhaustedError` on exhaustion."""
        retrying = Retrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_fixed(self.policy.delay),
            retry=retry_if_exception_type(self.retry_on),
            sleep=self.sleep,
            before_sleep=_log_before_sleep(description),
            reraise=False,
        )
        try:
            for attempt in retrying:
                with attempt:
                    value = operation(self.policy.timeout)
        except RetryError as exc:
            last = exc.last_attempt
            error = last.exception()
            raise RetryExhaustedError(description, last.attempt_number, error) from error
        return RetryOutcome(value=value, attempts=attempt.retry_state.attempt_number)


def _log_before_sleep(description: str) -> Callable[[RetryCallState], None]:
    def _log(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome is not None else None
        LOGGER.warning(
            "%s failed on attempt %d (%s); retrying in %.0fs",
            description,
            state.attempt_number,
            error,
            state.next_action.sleep if state.next_action is not None else 0.0,
        )

    return _log


__all__ = ["RetryExecutor", "RetryExhaustedError", "RetryOutcome", "RetryPolicy"]
