"""Structured operation logging for kubeboot.

Every top-level command is wrapped in an *operation*: a context manager that
collects the steps performed, the final result and timing, and appends a
single JSON document to ``<logs_dir>/operations.jsonl`` when it exits. The
log is an audit trail; failing to write it must never fail the command, so the
logger disables itself on the first I/O error.

Human readable progress is emitted separately through the standard
:mod:`logging` module (``logging.getLogger(__name__)`` in each module).
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from . import __version__

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


class OperationScope:
    """Mutable record for a single logged operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started = time.monotonic()
        self._id = uuid.uuid4().hex

    @property
    def finished(self) -> bool:
        """Return True once a result has been recorded."""
        return self.result is not None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an intermediate step."""
        self.steps.append(
            {"name": name, "status": status, "detail": detail, "timestamp": _timestamp()}
        )
        LOGGER.debug("%s: %s [%s] %s", self.command, name, status, detail or "")

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish("success", message, changed=changed, warnings=warnings, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "rc": rc,
            "context": _sanitise(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON document written to the operations log."""
        return {
            "id": self._id,
            "timestamp": _timestamp(),
            "command": self.command,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "context": {"kubeboot_version": __version__},
            "steps": self.steps,
            "result": self.result,
            "duration_ms": int((time.monotonic() - self._started) * 1000),
        }


class StructuredLogger:
    """Append operation records to a JSON-lines log file."""

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = Path(log_dir)
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Operation log disabled; cannot create %s: %s", self._log_dir, exc)
            self._enabled = False

    @property
    def operations_log(self) -> Path:
        """Path of the JSON-lines operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if not scope.finished:
                message = str(exc) or exc.__class__.__name__
                scope.error(message, errors=[f"{exc.__class__.__name__}: {message}"])
            raise
        finally:
            if not scope.finished:
                scope.success(f"{command} completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.warning(
                "Operation log disabled; cannot write %s: %s", self._operations_log_path, exc
            )
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
