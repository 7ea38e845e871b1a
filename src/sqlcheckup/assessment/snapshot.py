"""Raw per-instance metric snapshots handed to the policy rules.

Each metric category is optional: ``None`` means the category could not be
collected, while an empty tuple is a valid (if unusual) observation.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum

from packaging.version import InvalidVersion, Version

DEFAULT_INSTANCE = "DEFAULT"

# Sentinel for "max server memory (MB)" when it has never been configured.
UNLIMITED_MEMORY_MB = 2147483647

# LastGoodCheckDbTime and DBCC DBINFO report this date when no clean CHECKDB
# has ever completed.
CHECKDB_EPOCH = datetime(1900, 1, 1, tzinfo=UTC)


class EngineVersion(IntEnum):
    """Known SQL Server major versions, keyed by engine major ordinal."""

    UNKNOWN = 0
    SQL2012 = 11
    SQL2014 = 12
    SQL2016 = 13
    SQL2017 = 14
    SQL2019 = 15
    SQL2022 = 16

    @classmethod
    def from_major(cls, major: int | None) -> EngineVersion:
        """Return the enum member for *major*, or ``UNKNOWN``."""
        if major is None:
            return cls.UNKNOWN
        try:
            return cls(major)
        except ValueError:
            return cls.UNKNOWN

    @property
    def label(self) -> str:
        """Human readable product name."""
        if self is EngineVersion.UNKNOWN:
            return "Unknown"
        return f"SQL Server {self.name[3:]}"


def parse_major_version(product_version: str | None) -> int:
    """Return the major ordinal of a build number such as ``15.0.4236.7``.

    Unparseable or empty values yield ``0`` (``EngineVersion.UNKNOWN``).
    """
    if not product_version:
        return 0
    try:
        release = Version(product_version.strip()).release
    except InvalidVersion:
        return 0
    return release[0] if release else 0


@dataclass(slots=True, frozen=True, order=True)
class InstanceIdentity:
    """A server/instance pair; unnamed instances use ``DEFAULT``."""

    server_name: str
    instance_name: str = DEFAULT_INSTANCE

    @property
    def is_default(self) -> bool:
        """Return ``True`` for the unnamed (default) instance."""
        return self.instance_name.upper() == DEFAULT_INSTANCE

    @property
    def connection_name(self) -> str:
        """Return the ``server`` or ``server\\instance`` connection string."""
        if self.is_default:
            return self.server_name
        return f"{self.server_name}\\{self.instance_name}"

    def sort_key(self) -> tuple[str, str]:
        """Case-insensitive ordering key."""
        return (self.server_name.lower(), self.instance_name.lower())

    def __str__(self) -> str:
        return f"{self.server_name}/{self.instance_name}"


@dataclass(slots=True, frozen=True)
class ServerInfo:
    """Engine version and hardware facts for an instance."""

    product_version: str
    major_version: int
    edition: str
    physical_memory_mb: int
    cpu_count: int
    numa_node_count: int
    machine_name: str | None = None

    @property
    def engine_version(self) -> EngineVersion:
        """Return the :class:`EngineVersion` for this instance."""
        return EngineVersion.from_major(self.major_version)


@dataclass(slots=True, frozen=True)
class DatabaseOptions:
    """Per-database settings taken from the database inventory."""

    name: str
    auto_create_stats: bool
    auto_update_stats: bool
    page_verify: str
    compatibility_level: int
    recovery_model: str
    vlf_count: int | None = None


@dataclass(slots=True, frozen=True)
class DatabaseFile:
    """Size and autogrowth metadata for one database file.

    ``max_size_mb`` is ``-1`` for unlimited growth. ``growth`` holds a
    percentage when ``is_percent_growth`` is set, otherwise megabytes.
    """

    database: str
    logical_name: str
    file_type: str
    max_size_mb: int
    is_percent_growth: bool
    growth: int


@dataclass(slots=True, frozen=True)
class CheckDbRecord:
    """Last known good integrity check for a database."""

    database: str
    last_known_good: datetime | None


@dataclass(slots=True, frozen=True)
class BackupRecord:
    """Most recent full and log backups for a database."""

    database: str
    recovery_model: str
    last_full_backup: datetime | None
    last_log_backup: datetime | None


@dataclass(slots=True, frozen=True)
class TempDbFile:
    """A tempdb file; ``file_type`` is ``ROWS`` or ``LOG``."""

    logical_name: str
    file_type: str
    size_mb: int

    @property
    def is_data(self) -> bool:
        """Return ``True`` for data (ROWS) files."""
        return self.file_type.upper() == "ROWS"


SNAPSHOT_CATEGORIES: tuple[str, ...] = (
    "server_info",
    "config_values",
    "database_options",
    "file_growth",
    "trace_flags",
    "checkdb_history",
    "backup_history",
    "tempdb_files",
)


@dataclass(slots=True, frozen=True)
class InstanceSnapshot:
    """Immutable bundle of everything collected for one instance."""

    identity: InstanceIdentity
    collected_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    server_info: ServerInfo | None = None
    config_values: Mapping[str, int] | None = None
    database_options: tuple[DatabaseOptions, ...] | None = None
    file_growth: tuple[DatabaseFile, ...] | None = None
    trace_flags: frozenset[int] | None = None
    checkdb_history: tuple[CheckDbRecord, ...] | None = None
    backup_history: tuple[BackupRecord, ...] | None = None
    tempdb_files: tuple[TempDbFile, ...] | None = None

    @property
    def unavailable_categories(self) -> tuple[str, ...]:
        """Return the metric categories that could not be collected."""
        return tuple(name for name in SNAPSHOT_CATEGORIES if getattr(self, name) is None)

    @property
    def engine_version(self) -> EngineVersion:
        """Return the engine version, ``UNKNOWN`` when server info is missing."""
        if self.server_info is None:
            return EngineVersion.UNKNOWN
        return self.server_info.engine_version


__all__ = [
    "CHECKDB_EPOCH",
    "DEFAULT_INSTANCE",
    "SNAPSHOT_CATEGORIES",
    "UNLIMITED_MEMORY_MB",
    "BackupRecord",
    "CheckDbRecord",
    "DatabaseFile",
    "DatabaseOptions",
    "EngineVersion",
    "InstanceIdentity",
    "InstanceSnapshot",
    "ServerInfo",
    "TempDbFile",
    "parse_major_version",
]
