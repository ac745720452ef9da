"""Structured operation logging for govm commands.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects steps, lock wait time and a final result, then appends one JSON record
to ``operations.jsonl`` under the configured logs directory. Logging problems
never abort a command: the logger disables itself and carries on.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def configure_console_logging(*, verbose: bool, console: Console | None = None) -> None:
    """Route ``govm.*`` loggers to stderr through Rich."""
    package_logger = logging.getLogger("govm")
    for handler in list(package_logger.handlers):
        if isinstance(handler, RichHandler):
            package_logger.removeHandler(handler)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=False,
        show_path=verbose,
        markup=False,
    )
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Mutable record of a single command execution."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        self.op_id = secrets.token_hex(8)
        self.command = command
        self.args = _sanitize(dict(args or {}))
        self.target = _sanitize(dict(target or {}))
        self.started_at = datetime.now(UTC)
        self._started = time.monotonic()
        self._steps: list[dict[str, object]] = []
        self._lock_wait_ms: int | None = None
        self._result: dict[str, object] | None = None

    @property
    def result(self) -> dict[str, object] | None:
        """Return the recorded result, if any."""
        return self._result

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Append a named step to the operation trail."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self._steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the command waited for its lock."""
        self._lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            warnings=warnings,
            context=context,
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
        """Mark the operation complete with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            backups=backups,
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
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            context=context,
            rc=rc,
        )

    def to_record(self) -> dict[str, object]:
        """Return the JSON record persisted for this operation."""
        result = self._result or {"status": "success", "message": "Completed."}
        return {
            "id": self.op_id,
            "ts": self.started_at.isoformat(timespec="seconds").replace("+00:00", "Z"),
            "pid": os.getpid(),
            "command": self.command,
            "args": self.args,
            "target": self.target,
            "steps": list(self._steps),
            "lock_wait_ms": self._lock_wait_ms,
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "result": result,
        }

    def _record_exception(self, exc: BaseException) -> None:
        if self._result is not None:
            return
        message = str(exc) or exc.__class__.__name__
        self.error(message, errors=[f"{exc.__class__.__name__}: {message}"])

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": [str(item) for item in warnings or ()],
            "errors": [str(item) for item in errors or ()],
            "backups": [str(item) for item in backups or ()],
            "context": _sanitize(dict(context or {})),
        }
        if rc is not None:
            result["rc"] = rc
        self._result = result


class StructuredLogger:
    """Append-only JSON operation log."""

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = log_dir.expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Operation log disabled, cannot create %s: %s", self._log_dir, exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
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
            scope._record_exception(exc)
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record) + "\n")
        except OSError as exc:
            LOGGER.warning("Disabling operation log after write failure: %s", exc)
            self._enabled = False


__all__ = [
    "OPERATIONS_LOG_NAME",
    "OperationScope",
    "StructuredLogger",
    "configure_console_logging",
]
