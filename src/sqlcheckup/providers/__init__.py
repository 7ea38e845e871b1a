"""Collaborators that talk to inspected servers."""
from __future__ import annotations

from .instances import InstanceResolver, InventoryInstanceResolver, TargetResolutionError
from .metrics import (
    CategoryUnavailableError,
    InstanceUnreachableError,
    MetricsError,
    MetricsProvider,
    MetricsSession,
    collect_snapshot,
)
from .sqlserver import SqlServerMetricsProvider, SqlServerSession, build_connection_string

__all__ = [
    "CategoryUnavailableError",
    "InstanceResolver",
    "InstanceUnreachableError",
    "InventoryInstanceResolver",
    "MetricsError",
    "MetricsProvider",
    "MetricsSession",
    "SqlServerMetricsProvider",
    "SqlServerSession",
    "TargetResolutionError",
    "build_connection_string",
    "collect_snapshot",
]
