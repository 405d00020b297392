"""Structured operation logging.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects the steps taken and the final outcome and appends a single JSON line
to ``<logs_dir>/operations.jsonl`` when the command finishes. Logging must
never break a command: when the log directory or file cannot be written the
logger disables itself and carries on silently.
"""
from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

_LOG = logging.getLogger(__name__)


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Mutable record of a single CLI operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Start timing the operation identified by *command*."""
        self.command = command
        self.op_id = secrets.token_hex(6)
        self.args = _sanitize(dict(args or {}))
        self.target = _sanitize(dict(target or {}))
        self.steps: list[dict[str, object]] = []
        self.lock_wait_ms: int | None = None
        self.result: dict[str, object] | None = None
        self._started_at = datetime.now(UTC)
        self._started = time.monotonic()

    def add_step(
        self,
        name: str,
        *,
        status: str = "success",
        detail: str | None = None,
    ) -> None:
        """Record a named step of the operation."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its lock."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, warnings=warnings, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
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
        self._set_result(
            "error",
            message,
            errors=errors or [message],
            context=context,
            rc=rc,
        )

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable log record."""
        return {
            "timestamp": self._started_at.isoformat(),
            "op_id": self.op_id,
            "command": self.command,
            "args": self.args,
            "target": self.target,
            "steps": list(self.steps),
            "lock_wait_ms": self.lock_wait_ms,
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "result": self.result or {"status": "incomplete"},
        }

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "context": _sanitize(dict(context or {})),
        }
        if rc is not None:
            result["rc"] = rc
        self.result = result


class StructuredLogger:
    """Append operation records to ``operations.jsonl``."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling logging when it is unusable."""
        self._logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self._logs_dir / "operations.jsonl"
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _LOG.debug("Disabling operation log, cannot create %s: %s", self._logs_dir, exc)
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
        """Yield a scope for *command* and persist it when the block exits."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__)
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            _LOG.debug("Disabling operation log after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
