"""Structured operation logging for cpctl.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which
appends one JSON record per operation to ``<logs_dir>/operations.jsonl``.
Logging never fails a command: when the log directory cannot be created or a
write fails the logger disables itself and the command carries on.
"""
from __future__ import annotations

import json
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return *value* converted into JSON-safe primitives."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects the outcome of one logged operation."""

    def __init__(self, command: str) -> None:
        """Initialise an empty result for *command*."""
        self.command = command
        self.result: dict[str, object] | None = None
        self.steps: list[dict[str, object]] = []

    def step(self, name: str, status: str, **details: object) -> None:
        """Record an intermediate step transition."""
        entry: dict[str, object] = {"name": name, "status": status, "at": _timestamp()}
        if details:
            entry["details"] = _sanitize(details)
        self.steps.append(entry)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set("success", message, changed=changed, warnings=warnings, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set(
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
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _set(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings),
            "errors": list(errors),
        }
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(context)
        self.result = result


class StructuredLogger:
    """Append-only JSON lines logger for CLI operations."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling logging if it is unusable."""
        self.log_dir = log_dir
        self._operations_log_path = log_dir / "operations.jsonl"
        self._enabled = True
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
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
        """Log the operation wrapped by the ``with`` block."""
        scope = OperationScope(command)
        started = time.monotonic()
        record: dict[str, object] = {
            "id": uuid.uuid4().hex,
            "ts": _timestamp(),
            "command": command,
            "args": _sanitize(dict(args or {})),
            "target": _sanitize(dict(target or {})),
        }
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Unhandled {type(exc).__name__}: {exc}")
            raise
        finally:
            record["duration_ms"] = int((time.monotonic() - started) * 1000)
            if scope.steps:
                record["steps"] = scope.steps
            record["result"] = scope.result or {
                "status": "success",
                "message": "",
                "changed": 0,
                "warnings": [],
                "errors": [],
            }
            self._write(record)

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
