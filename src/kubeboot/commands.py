"""Subprocess helpers shared by the providers."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

LOGGER = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Raised when an external command fails, times out or is missing."""

    def __init__(self, message: str, *, args: Sequence[str], returncode: int | None = None) -> None:
        super().__init__(message)
        self.command = list(args)
        self.returncode = returncode


class Runner(Protocol):
    """Callable signature used to execute external commands."""

    def __call__(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: float | None = None,
        log_path: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Execute *args* and return the completed process."""
        ...


def run_command(
    args: Sequence[str],
    *,
    check: bool = True,
    timeout: float | None = None,
    log_path: Path | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *args*, capturing output (or writing it to *log_path*)."""
    command = list(args)
    LOGGER.debug("exec: %s", " ".join(command))
    try:
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("w", encoding="utf-8") as handle:
                result = subprocess.run(  # noqa: S603
                    command,
                    stdout=handle,
                    stderr=subprocess.STDOUT,
                    text=True,
                    timeout=timeout,
                    check=False,
                )
        else:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
    except FileNotFoundError as exc:
        raise CommandError(f"{command[0]} not found: {exc}", args=command) from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandError(
            f"{' '.join(command)} timed out after {timeout:.0f}s", args=command
        ) from exc
    if check and result.returncode != 0:
        stdout = getattr(result, "stdout", "") or ""
        stderr = getattr(result, "stderr", "") or ""
        message = stderr.strip() or stdout.strip() or "no output"
        if log_path is not None:
            message = f"see {log_path}"
        raise CommandError(
            f"{' '.join(command)} failed (exit {result.returncode}): {message}",
            args=command,
            returncode=result.returncode,
        )
    return result


__all__ = ["CommandError", "Runner", "run_command"]
