"""Enumerations for process exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes returned by the CLI."""

    OK = 0
    FATAL = 1
    USAGE = 2
