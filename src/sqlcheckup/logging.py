"""Structured operation logging for sqlcheckup.

Every CLI invocation is wrapped in an :class:`OperationScope` which appends a
single JSON document to ``operations.jsonl`` inside the configured log
directory. The logger never raises: if the directory cannot be created or a
write fails, it disables itself and the run carries on.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def _json_safe(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


def _as_list(values: Iterable[str] | None) -> list[str]:
    if values is None:
        return []
    return [str(value) for value in values]


class OperationScope:
    """Collects the outcome of a single logged operation."""

    def __init__(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope with its identifying details."""
        self.name = name
        self.operation_id = uuid.uuid4().hex
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started = time.perf_counter()
        self.started_at = datetime.now(UTC).isoformat()

    def add_step(self, name: str, *, status: str = "ok", detail: str | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish("success", message, rc=0, warnings=warnings, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            rc=0,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        rc: int = 1,
        errors: Iterable[str] | None = None,
        warnings: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish(
            "error",
            message,
            rc=rc,
            warnings=warnings,
            errors=errors if errors is not None else (message,),
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "rc": rc,
            "warnings": _as_list(warnings),
            "errors": _as_list(errors),
            "context": _json_safe(context or {}),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable log record."""
        result = self.result or {
            "status": "incomplete",
            "message": "Operation finished without recording a result.",
            "rc": None,
            "warnings": [],
            "errors": [],
            "context": {},
        }
        return {
            "op_id": self.operation_id,
            "operation": self.name,
            "started_at": self.started_at,
            "duration_ms": int((time.perf_counter() - self._started) * 1000),
            "pid": os.getpid(),
            "args": _json_safe(self.args),
            "target": _json_safe(self.target),
            "steps": list(self.steps),
            "result": result,
        }


class StructuredLogger:
    """Append-only JSON-lines logger for CLI operations."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling the logger on failure."""
        self._log_dir = Path(log_dir)
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled; cannot create %s: %s", log_dir, exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(name, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", rc=1)
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=True)
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            LOGGER.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OPERATIONS_LOG_NAME", "OperationScope", "StructuredLogger"]
