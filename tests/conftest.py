"""Shared fixtures: healthy snapshots and an in-memory metrics provider."""

from __future__ import annotations

import dataclasses
import threading
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from types import TracebackType
from typing import Any

import pytest

from sqlcheckup.assessment.snapshot import (
    BackupRecord,
    CheckDbRecord,
    DatabaseFile,
    DatabaseOptions,
    InstanceIdentity,
    InstanceSnapshot,
    ServerInfo,
    TempDbFile,
)
from sqlcheckup.providers.metrics import CategoryUnavailableError, InstanceUnreachableError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def _healthy_fields() -> dict[str, Any]:
    return {
        "collected_at": NOW,
        "server_info": ServerInfo(
            product_version="15.0.4236.7",
            major_version=15,
            edition="Enterprise Edition (64-bit)",
            physical_memory_mb=32768,
            cpu_count=8,
            numa_node_count=1,
            machine_name="SQL01",
        ),
        "config_values": {
            "min server memory (MB)": 1024,
            "max server memory (MB)": 24576,
            "optimize for ad hoc workloads": 1,
            "remote admin connections": 1,
            "backup compression default": 1,
            "max degree of parallelism": 8,
        },
        "database_options": (
            DatabaseOptions("master", True, True, "CHECKSUM", 150, "SIMPLE", vlf_count=4),
            DatabaseOptions("sales", True, True, "CHECKSUM", 150, "FULL", vlf_count=120),
        ),
        "file_growth": (
            DatabaseFile("sales", "sales_data", "ROWS", 204800, False, 512),
            DatabaseFile("sales", "sales_log", "LOG", 2097152, False, 256),
        ),
        "trace_flags": frozenset({4199, 7745, 12310}),
        "checkdb_history": (
            CheckDbRecord("master", NOW - timedelta(days=1)),
            CheckDbRecord("sales", NOW - timedelta(days=2)),
        ),
        "backup_history": (
            BackupRecord("master", "SIMPLE", NOW - timedelta(days=1), None),
            BackupRecord("sales", "FULL", NOW - timedelta(days=1), NOW - timedelta(hours=1)),
        ),
        "tempdb_files": (
            TempDbFile("tempdev", "ROWS", 1024),
            TempDbFile("temp2", "ROWS", 1024),
            TempDbFile("temp3", "ROWS", 1024),
            TempDbFile("temp4", "ROWS", 1024),
            TempDbFile("templog", "LOG", 512),
        ),
    }


SnapshotFactory = Callable[..., InstanceSnapshot]


@pytest.fixture
def snapshot_factory() -> SnapshotFactory:
    """Return a builder for snapshots that pass every rule unless overridden.

    ``server_info`` accepts either a :class:`ServerInfo` or a mapping of
    fields to replace on the healthy default; ``config`` merges into the
    healthy configuration values.
    """

    def build(
        identity: InstanceIdentity | None = None,
        *,
        config: Mapping[str, int] | None = None,
        **overrides: Any,
    ) -> InstanceSnapshot:
        fields = _healthy_fields()
        info_override = overrides.pop("server_info", dataclasses.MISSING)
        if isinstance(info_override, Mapping):
            fields["server_info"] = dataclasses.replace(fields["server_info"], **info_override)
        elif info_override is not dataclasses.MISSING:
            fields["server_info"] = info_override
        if config is not None:
            fields["config_values"] = {**fields["config_values"], **config}
        fields.update(overrides)
        return InstanceSnapshot(
            identity=identity or InstanceIdentity("sql01"),
            **fields,
        )

    return build


class FakeSession:
    """Serves categories from a prepared snapshot."""

    def __init__(
        self,
        identity: InstanceIdentity,
        snapshot: InstanceSnapshot,
        failing: Iterable[str],
        log: list[tuple[str, str, float]],
    ) -> None:
        self.identity = identity
        self._snapshot = snapshot
        self._failing = set(failing)
        self._log = log
        self.closed = False

    def __enter__(self) -> FakeSession:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.closed = True

    def _fetch(self, category: str, timeout: float) -> Any:
        self._log.append((str(self.identity), category, timeout))
        if category in self._failing:
            raise CategoryUnavailableError(f"{category} denied")
        value = getattr(self._snapshot, category)
        if value is None:
            raise CategoryUnavailableError(f"{category} missing")
        return value

    def server_info(self, *, timeout: float) -> Any:
        return self._fetch("server_info", timeout)

    def config_values(self, *, timeout: float) -> Any:
        return self._fetch("config_values", timeout)

    def database_options(self, *, timeout: float) -> Any:
        return self._fetch("database_options", timeout)

    def file_growth(self, *, timeout: float) -> Any:
        return self._fetch("file_growth", timeout)

    def trace_flags(self, *, timeout: float) -> Any:
        return self._fetch("trace_flags", timeout)

    def checkdb_history(self, *, timeout: float) -> Any:
        return self._fetch("checkdb_history", timeout)

    def backup_history(self, *, timeout: float) -> Any:
        return self._fetch("backup_history", timeout)

    def tempdb_files(self, *, timeout: float) -> Any:
        return self._fetch("tempdb_files", timeout)


class FakeProvider:
    """In-memory provider keyed by ``server/instance`` strings.

    Identities without a prepared snapshot receive the default healthy one;
    identities listed in ``unreachable`` fail to connect.
    """

    def __init__(
        self,
        default: InstanceSnapshot,
        *,
        snapshots: Mapping[str, InstanceSnapshot] | None = None,
        unreachable: Iterable[str] = (),
        failing: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self._default = default
        self._snapshots = dict(snapshots or {})
        self._unreachable = set(unreachable)
        self._failing = {key: set(value) for key, value in (failing or {}).items()}
        self.calls: list[tuple[str, str, float]] = []
        self.connected: list[str] = []
        self._lock = threading.Lock()

    def connect(self, identity: InstanceIdentity, *, timeout: float) -> FakeSession:
        key = str(identity)
        with self._lock:
            self.connected.append(key)
        if key in self._unreachable:
            raise InstanceUnreachableError(f"{key}: login timeout expired")
        snapshot = self._snapshots.get(key, self._default)
        return FakeSession(identity, snapshot, self._failing.get(key, ()), self.calls)


@pytest.fixture
def fake_provider_factory(snapshot_factory: SnapshotFactory) -> Callable[..., FakeProvider]:
    """Return a builder for :class:`FakeProvider` seeded with a healthy snapshot."""

    def build(**kwargs: Any) -> FakeProvider:
        default = kwargs.pop("default", None) or snapshot_factory()
        return FakeProvider(default, **kwargs)

    return build


@pytest.fixture
def cli_env(tmp_path: Path) -> dict[str, str]:
    """Environment that isolates the CLI config, logs and report output."""
    return {
        "SQLCHECKUP_CONFIG_FILE": str(tmp_path / "config.yml"),
        "SQLCHECKUP_LOGS_DIR": str(tmp_path / "logs"),
        "SQLCHECKUP_EXPORT__OUTPUT_DIR": str(tmp_path / "reports"),
    }


@pytest.fixture
def now() -> datetime:
    """Collection timestamp used by the healthy snapshot."""
    return NOW
