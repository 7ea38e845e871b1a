"""Metric provider protocol and snapshot collection.

A provider opens one session per instance. Failing to open the session means
the instance is unreachable and is skipped; a failure inside a single
category call only blanks that category in the resulting snapshot.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from types import MappingProxyType, TracebackType
from typing import Protocol

from ..assessment.snapshot import (
    SNAPSHOT_CATEGORIES,
    BackupRecord,
    CheckDbRecord,
    DatabaseFile,
    DatabaseOptions,
    InstanceIdentity,
    InstanceSnapshot,
    ServerInfo,
    TempDbFile,
)

LOGGER = logging.getLogger(__name__)


class MetricsError(RuntimeError):
    """Base class for metric collection failures."""


class InstanceUnreachableError(MetricsError):
    """Raised when an instance cannot be contacted at all."""


class CategoryUnavailableError(MetricsError):
    """Raised when one metric category cannot be collected."""


class MetricsSession(Protocol):
    """An open, instance-scoped channel returning one category per call."""

    identity: InstanceIdentity

    def __enter__(self) -> MetricsSession:
        ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool | None:
        ...

    def server_info(self, *, timeout: float) -> ServerInfo:
        """Return version and hardware facts."""
        ...

    def config_values(self, *, timeout: float) -> Mapping[str, int]:
        """Return ``sys.configurations`` values in use, keyed by name."""
        ...

    def database_options(self, *, timeout: float) -> Iterable[DatabaseOptions]:
        """Return the database inventory with options."""
        ...

    def file_growth(self, *, timeout: float) -> Iterable[DatabaseFile]:
        """Return file size and autogrowth metadata."""
        ...

    def trace_flags(self, *, timeout: float) -> Iterable[int]:
        """Return globally enabled trace flags."""
        ...

    def checkdb_history(self, *, timeout: float) -> Iterable[CheckDbRecord]:
        """Return last known good CHECKDB per database."""
        ...

    def backup_history(self, *, timeout: float) -> Iterable[BackupRecord]:
        """Return most recent full/log backup per database."""
        ...

    def tempdb_files(self, *, timeout: float) -> Iterable[TempDbFile]:
        """Return tempdb file metadata."""
        ...


class MetricsProvider(Protocol):
    """Factory for per-instance metric sessions."""

    def connect(self, identity: InstanceIdentity, *, timeout: float) -> MetricsSession:
        """Open a session or raise :class:`InstanceUnreachableError`."""
        ...


def _normalise(category: str, value: object) -> object:
    if category == "server_info":
        return value
    if category == "config_values":
        return MappingProxyType(dict(value))  # type: ignore[call-overload]
    if category == "trace_flags":
        return frozenset(int(flag) for flag in value)  # type: ignore[attr-defined]
    return tuple(value)  # type: ignore[call-overload]


def collect_snapshot(
    provider: MetricsProvider,
    identity: InstanceIdentity,
    *,
    timeout: float,
    clock: Callable[[], datetime] | None = None,
) -> InstanceSnapshot:
    """Collect every metric category for *identity* into a snapshot.

    :class:`InstanceUnreachableError` propagates to the caller; any other
    failure in a category degrades that category to ``None``.
    """
    now = clock() if clock is not None else datetime.now(UTC)
    values: dict[str, object] = {}
    with provider.connect(identity, timeout=timeout) as session:
        for category in SNAPSHOT_CATEGORIES:
            fetch = getattr(session, category)
            try:
                values[category] = _normalise(category, fetch(timeout=timeout))
            except InstanceUnreachableError:
                raise
            except CategoryUnavailableError as exc:
                LOGGER.warning("%s: %s unavailable: %s", identity, category, exc)
                values[category] = None
            except Exception as exc:
                LOGGER.warning(
                    "%s: %s collection failed unexpectedly: %r", identity, category, exc
                )
                values[category] = None
    return InstanceSnapshot(identity=identity, collected_at=now, **values)  # type: ignore[arg-type]


__all__ = [
    "CategoryUnavailableError",
    "InstanceUnreachableError",
    "MetricsError",
    "MetricsProvider",
    "MetricsSession",
    "collect_snapshot",
]
