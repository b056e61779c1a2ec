"""Structured operation logging for nixosctl.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects the steps the command performed (probe, cleanup, activation, ...)
and a final result, then appends one JSON record to ``operations.jsonl``.
A human-readable line log (``nixosctl.log``) is written through the standard
:mod:`logging` package; library modules log to ``logging.getLogger(__name__)``
and end up in the same file.

Logging must never break a command: when the log directory cannot be created
or a write fails, the logger disables itself and the command carries on.
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

from . import __version__

ROOT_LOGGER_NAME = "nixosctl"
OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "nixosctl.log"
_HANDLER_MARKER = "_nixosctl_structured"


def _sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


class OperationScope:
    """Collects the steps and outcome of a single CLI operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an empty scope for *command*."""
        self._logger = logger
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.op_id = secrets.token_hex(8)
        self.started_at = _now()
        self._start = time.perf_counter()
        self._steps: list[dict[str, object]] = []
        self._result: dict[str, object] | None = None
        self._lock_wait_ms: int | None = None

    @property
    def steps(self) -> list[dict[str, object]]:
        """Return a copy of the recorded steps."""
        return [dict(step) for step in self._steps]

    @property
    def result(self) -> dict[str, object] | None:
        """Return the recorded result, if any."""
        return dict(self._result) if self._result is not None else None

    def add_step(
        self,
        name: str,
        status: str = "success",
        detail: object | None = None,
    ) -> None:
        """Record a step performed during the operation."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self._steps.append(step)
        self._logger.emit_step(self.command, name, status, detail)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for locks."""
        self._lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings or [message],
            errors=errors,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=changed,
            warnings=None,
            errors=errors or [message],
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        context: Mapping[str, object] | None,
        rc: int | None,
    ) -> None:
        self._result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "context": _sanitize(dict(context or {})),
            "rc": rc,
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record describing this operation."""
        return {
            "id": self.op_id,
            "timestamp": self.started_at,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "context": {
                "nixosctl_version": __version__,
                "pid": os.getpid(),
            },
            "steps": self.steps,
            "lock_wait_ms": self._lock_wait_ms,
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "result": self._result,
        }


class StructuredLogger:
    """Append-only operation log plus a human-readable companion log."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory; disable logging when it is unusable."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self.logs_dir / HUMAN_LOG_NAME
        self._enabled = True
        self._log = logging.getLogger(ROOT_LOGGER_NAME)
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._install_handler()

    @property
    def enabled(self) -> bool:
        """Return ``True`` while records are being written."""
        return self._enabled

    def _install_handler(self) -> None:
        for handler in list(self._log.handlers):
            if getattr(handler, _HANDLER_MARKER, False):
                self._log.removeHandler(handler)
                handler.close()
        handler = logging.FileHandler(self._human_log_path, encoding="utf-8", delay=True)
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        setattr(handler, _HANDLER_MARKER, True)
        self._log.addHandler(handler)
        self._log.setLevel(logging.INFO)

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Run a block as a logged operation and persist its record."""
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"{type(exc).__name__}: {exc}")
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            self._write(scope)

    def emit_step(self, command: str, name: str, status: str, detail: object | None) -> None:
        """Forward a step to the human-readable log."""
        if not self._enabled:
            return
        level = logging.WARNING if status in {"warning", "error"} else logging.INFO
        suffix = f" ({detail})" if detail is not None else ""
        self._log.log(level, "%s: %s %s%s", command, name, status, suffix)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False
            return
        result = scope.result or {}
        level = logging.ERROR if result.get("status") == "error" else logging.INFO
        self._log.log(
            level, "%s %s: %s", scope.command, result.get("status"), result.get("message")
        )


__all__ = ["OperationScope", "StructuredLogger"]
