"""Snapshot collection tests."""
from __future__ import annotations

from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

import pytest

from sqlcheckup.assessment.snapshot import InstanceIdentity
from sqlcheckup.providers import InstanceUnreachableError, collect_snapshot


class ListSession:
    """Session returning plain mutable containers, one failing with a bug."""

    def __init__(self, identity: InstanceIdentity, template: Any) -> None:
        self.identity = identity
        self._template = template
        self.closed = False

    def __enter__(self) -> ListSession:
        return self

    def __exit__(self, *exc: object) -> None:
        self.closed = True

    def server_info(self, *, timeout: float) -> Any:
        return self._template.server_info

    def config_values(self, *, timeout: float) -> Any:
        return dict(self._template.config_values)

    def database_options(self, *, timeout: float) -> Any:
        return list(self._template.database_options)

    def file_growth(self, *, timeout: float) -> Any:
        return (entry for entry in self._template.file_growth)

    def trace_flags(self, *, timeout: float) -> Any:
        return ["4199", 7745, 7745]

    def checkdb_history(self, *, timeout: float) -> Any:
        raise KeyError("last_good")

    def backup_history(self, *, timeout: float) -> Any:
        return list(self._template.backup_history)

    def tempdb_files(self, *, timeout: float) -> Any:
        return list(self._template.tempdb_files)


class ListProvider:
    def __init__(self, template: Any) -> None:
        self._template = template
        self.sessions: list[ListSession] = []

    def connect(self, identity: InstanceIdentity, *, timeout: float) -> ListSession:
        session = ListSession(identity, self._template)
        self.sessions.append(session)
        return session


def test_collect_snapshot_normalises_containers(snapshot_factory) -> None:
    """Collected categories are frozen into immutable containers."""
    provider = ListProvider(snapshot_factory())
    collected_at = datetime(2024, 6, 1, 9, 0, tzinfo=UTC)

    snapshot = collect_snapshot(
        provider,
        InstanceIdentity("sql01"),
        timeout=30,
        clock=lambda: collected_at,
    )

    assert snapshot.collected_at == collected_at
    assert isinstance(snapshot.config_values, MappingProxyType)
    assert isinstance(snapshot.database_options, tuple)
    assert isinstance(snapshot.file_growth, tuple)
    assert snapshot.trace_flags == frozenset({4199, 7745})
    assert provider.sessions[0].closed


def test_unexpected_category_error_degrades_to_none(snapshot_factory) -> None:
    """A provider bug in one category leaves only that category unavailable."""
    snapshot = collect_snapshot(
        ListProvider(snapshot_factory()),
        InstanceIdentity("sql01"),
        timeout=30,
    )
    assert snapshot.checkdb_history is None
    assert snapshot.unavailable_categories == ("checkdb_history",)
    assert snapshot.backup_history is not None


def test_unreachable_instance_propagates(fake_provider_factory) -> None:
    """Connection failures are not swallowed by collection."""
    provider = fake_provider_factory(unreachable=["sql01/DEFAULT"])
    with pytest.raises(InstanceUnreachableError):
        collect_snapshot(provider, InstanceIdentity("sql01"), timeout=5)


def test_category_timeout_is_passed_through(fake_provider_factory) -> None:
    """Every category call receives the query timeout."""
    provider = fake_provider_factory()
    collect_snapshot(provider, InstanceIdentity("sql01"), timeout=12.5)
    assert len(provider.calls) == 8
    assert {timeout for _, _, timeout in provider.calls} == {12.5}
