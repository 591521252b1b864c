"""Structured operation logging for corectl commands.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects ordered steps (``secret.create``, ``rollback.delete`` ...) and a
final result, then appends a single JSON document to
``<logs_dir>/operations.jsonl``. Logging must never break a command: when the
directory cannot be created or a write fails the logger disables itself and
later operations are silently skipped.

Human-oriented diagnostics go through the standard ``logging`` module under
the ``corectl`` logger; :func:`configure_console_logging` wires it to a Rich
handler when ``--verbose`` is supplied.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "corectl"
LOGGER = logging.getLogger(__name__)


def configure_console_logging(verbose: bool, *, console: Console | None = None) -> None:
    """Attach a Rich handler to the package logger for interactive runs."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=False,
    )
    handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.addHandler(handler)


def _utcnow() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe rendition of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Mutable record of a single CLI operation."""

    command: str
    args: dict[str, object]
    target: dict[str, object]
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: str = field(default_factory=_utcnow)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Append an ordered step to the operation record."""
        step: dict[str, object] = {"name": name, "status": status, "at": _utcnow()}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
        backups: Sequence[str] | None = None,
    ) -> None:
        """Record a successful outcome."""
        self._set_result(
            "success",
            message,
            changed=changed,
            context=context,
            backups=backups,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a completed operation that produced warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings or [message],
            errors=errors,
            context=context,
            backups=backups,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed operation."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        backups: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
            "context": _sanitize(dict(context or {})),
        }
        if rc is not None:
            result["rc"] = rc
        self.result = result

    def to_record(self, *, finished_at: str, duration_ms: int) -> dict[str, object]:
        """Return the JSON document persisted for this operation."""
        return {
            "id": self.operation_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "started_at": self.started_at,
            "finished_at": finished_at,
            "duration_ms": duration_ms,
            "steps": self.steps,
            "result": self.result,
        }


class StructuredLogger:
    """Append-only JSON operations log."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; disable logging when it is unusable."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / "operations.jsonl"
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("operations log disabled: %s", exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        """Location of the operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Run a block as a logged operation."""
        scope = OperationScope(command=command, args=dict(args or {}), target=dict(target or {}))
        started = time.monotonic()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__)
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            duration_ms = int((time.monotonic() - started) * 1000)
            self._write(scope.to_record(finished_at=_utcnow(), duration_ms=duration_ms))

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.debug("operations log disabled after write failure: %s", exc)
            self._enabled = False


__all__ = [
    "LOGGER_NAME",
    "OperationScope",
    "StructuredLogger",
    "configure_console_logging",
]
