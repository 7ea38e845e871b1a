"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from sqlcheckup.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    text = logger.operations_log_path.read_text(encoding="utf-8")
    return [json.loads(line) for line in text.splitlines()]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.success("done")


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("demo") as op:
        op.success("done")

    assert logger._enabled is False  # type: ignore[attr-defined]

    # Subsequent operations should not raise even though logger is disabled.
    with logger.operation("demo-2") as op:
        op.success("done")


def test_operation_records_steps_and_success(tmp_path: Path) -> None:
    """Steps and the final result land in a single JSON line."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "assess",
        args={"targets": ["sql01"]},
        target={"kind": "fleet"},
    ) as op:
        op.add_step("targets.load", detail="1 target(s)")
        op.success("Assessment completed.", context={"report": Path("/tmp/r.csv")})

    (record,) = _records(logger)
    assert record["operation"] == "assess"
    assert record["args"] == {"targets": ["sql01"]}
    assert record["steps"] == [{"name": "targets.load", "status": "ok", "detail": "1 target(s)"}]
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"
    assert result["rc"] == 0
    assert result["context"] == {"report": "/tmp/r.csv"}


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("demo", args={"path": Path("foo")}) as op:
        op.warning(
            "warned",
            warnings=("sql02: unreachable",),
            errors=("err",),
            context={"path": Path("/var/lib"), "obj": Custom()},
        )

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert record["args"] == {"path": "foo"}
    assert result["status"] == "warning"
    assert result["warnings"] == ["sql02: unreachable"]
    assert result["errors"] == ["err"]
    assert result["context"] == {"path": "/var/lib", "obj": "<custom>"}


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("demo") as op:
        op.error("boom", rc=4, errors=None, context={"value": {1, 2}})

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["rc"] == 4
    assert result["errors"] == ["boom"]
    assert result["context"] == {"value": "{1, 2}"}


def test_unhandled_exception_is_logged_and_reraised(tmp_path: Path) -> None:
    """An exception escaping the scope is recorded before propagating."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("demo"):
            raise ValueError("bad input")

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert "bad input" in str(result["message"])


def test_operation_without_result_is_incomplete(tmp_path: Path) -> None:
    """Scopes that never record an outcome are flagged as incomplete."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("demo"):
        pass

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "incomplete"
