"""SQL Server metric provider backed by ``pyodbc``.

Connections are opened read-only against ``master``. Every statement runs
with the session's query timeout; login attempts use the provider's login
timeout. Timestamps read from the server are converted to UTC using the
server's own clock offset.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from types import TracebackType
from typing import Any

from ..assessment.snapshot import (
    CHECKDB_EPOCH,
    BackupRecord,
    CheckDbRecord,
    DatabaseFile,
    DatabaseOptions,
    InstanceIdentity,
    ServerInfo,
    TempDbFile,
    parse_major_version,
)
from ..config import ConnectionConfig
from .metrics import CategoryUnavailableError, InstanceUnreachableError

LOGGER = logging.getLogger(__name__)

APPLICATION_NAME = "sqlcheckup"

# sys.master_files reports log files capped at 2 TB with this page count.
LOG_UNLIMITED_PAGES = 268435456
PAGES_PER_MB = 128

ConnectFunc = Callable[[str, float], Any]

CONFIG_OPTION_NAMES: tuple[str, ...] = (
    "min server memory (MB)",
    "max server memory (MB)",
    "optimize for ad hoc workloads",
    "remote admin connections",
    "backup compression default",
    "max degree of parallelism",
)

SERVER_INFO_SQL = """
SELECT
    CAST(SERVERPROPERTY('ProductVersion') AS nvarchar(128)) AS product_version,
    CAST(SERVERPROPERTY('Edition') AS nvarchar(128)) AS edition,
    CAST(SERVERPROPERTY('MachineName') AS nvarchar(128)) AS machine_name,
    (SELECT physical_memory_kb / 1024 FROM sys.dm_os_sys_info) AS physical_memory_mb,
    (SELECT COUNT(*) FROM sys.dm_os_schedulers
        WHERE status = 'VISIBLE ONLINE') AS cpu_count,
    (SELECT COUNT(DISTINCT parent_node_id) FROM sys.dm_os_schedulers
        WHERE status = 'VISIBLE ONLINE') AS numa_node_count
"""

CLOCK_OFFSET_SQL = "SELECT DATEDIFF(minute, GETDATE(), GETUTCDATE()) AS offset_minutes"

DATABASE_OPTIONS_SQL = """
SELECT
    d.name,
    d.is_auto_create_stats_on,
    d.is_auto_update_stats_on,
    d.page_verify_option_desc,
    d.compatibility_level,
    d.recovery_model_desc
FROM sys.databases AS d
WHERE d.state_desc = 'ONLINE'
ORDER BY d.name
"""

VLF_COUNT_SQL = """
SELECT d.name, COUNT(li.vlf_sequence_number) AS vlf_count
FROM sys.databases AS d
CROSS APPLY sys.dm_db_log_info(d.database_id) AS li
WHERE d.state_desc = 'ONLINE'
GROUP BY d.name
"""

FILE_GROWTH_SQL = """
SELECT
    DB_NAME(mf.database_id) AS database_name,
    mf.name,
    mf.type_desc,
    mf.max_size,
    mf.is_percent_growth,
    mf.growth
FROM sys.master_files AS mf
ORDER BY database_name, mf.file_id
"""

TRACE_STATUS_SQL = "DBCC TRACESTATUS(-1) WITH NO_INFOMSGS"

# Fallbacks for builds before SQL Server 2016 SP2, which lack sys.dm_db_log_info
# and return NULL for DATABASEPROPERTYEX(..., 'LastGoodCheckDbTime').
DBINFO_SQL = "DBCC DBINFO({database}) WITH TABLERESULTS, NO_INFOMSGS"
LOGINFO_SQL = "DBCC LOGINFO({database}) WITH NO_INFOMSGS"
DBINFO_LAST_KNOWN_GOOD = "dbi_dbccLastKnownGood"

CHECKDB_SQL = """
SELECT
    d.name,
    CAST(DATABASEPROPERTYEX(d.name, 'LastGoodCheckDbTime') AS datetime) AS last_good
FROM sys.databases AS d
WHERE d.state_desc = 'ONLINE' AND d.name <> 'tempdb'
ORDER BY d.name
"""

BACKUP_HISTORY_SQL = """
SELECT
    d.name,
    d.recovery_model_desc,
    MAX(CASE WHEN b.type = 'D' THEN b.backup_finish_date END) AS last_full,
    MAX(CASE WHEN b.type = 'L' THEN b.backup_finish_date END) AS last_log
FROM sys.databases AS d
LEFT JOIN msdb.dbo.backupset AS b ON b.database_name = d.name
WHERE d.name <> 'tempdb'
GROUP BY d.name, d.recovery_model_desc
ORDER BY d.name
"""

TEMPDB_FILES_SQL = """
SELECT name, type_desc, size / 128 AS size_mb
FROM tempdb.sys.database_files
ORDER BY file_id
"""


def build_connection_string(
    identity: InstanceIdentity,
    settings: ConnectionConfig,
) -> str:
    """Return the ODBC connection string for *identity*."""
    parts = [
        f"DRIVER={{{settings.driver}}}",
        f"SERVER={identity.connection_name}",
        "DATABASE=master",
        f"APP={APPLICATION_NAME}",
        "ApplicationIntent=ReadOnly",
    ]
    if settings.trusted_connection:
        parts.append("Trusted_Connection=yes")
    else:
        parts.append(f"UID={settings.username}")
        parts.append(f"PWD={{{settings.password or ''}}}")
    parts.append(f"Encrypt={'yes' if settings.encrypt else 'no'}")
    if settings.trust_server_certificate:
        parts.append("TrustServerCertificate=yes")
    return ";".join(parts) + ";"


def odbc_connect(connection_string: str, login_timeout: float) -> Any:
    """Open a read-only pyodbc connection."""
    import pyodbc

    try:
        return pyodbc.connect(
            connection_string,
            timeout=max(1, int(login_timeout)),
            readonly=True,
            autocommit=True,
        )
    except pyodbc.Error as exc:
        raise InstanceUnreachableError(str(exc)) from exc


def _mb_from_pages(pages: int) -> int:
    return int(pages) // PAGES_PER_MB


def _database_literal(name: str) -> str:
    escaped = name.replace("'", "''")
    return f"N'{escaped}'"


def _parse_server_datetime(value: object) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise CategoryUnavailableError(f"unparseable server timestamp {value!r}") from exc


class SqlServerSession:
    """One open connection to an instance."""

    def __init__(self, identity: InstanceIdentity, connection: Any) -> None:
        """Wrap an open DB-API *connection* for *identity*."""
        self.identity = identity
        self._connection = connection
        self._clock_offset: timedelta | None = None

    def __enter__(self) -> SqlServerSession:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying connection, ignoring driver errors on close."""
        try:
            self._connection.close()
        except Exception as exc:  # pragma: no cover - driver specific
            LOGGER.debug("%s: error closing connection: %r", self.identity, exc)

    # ------------------------------------------------------------------
    def _query(
        self,
        sql: str,
        *,
        timeout: float,
        params: Sequence[object] = (),
    ) -> list[dict[str, Any]]:
        self._connection.timeout = max(1, int(timeout))
        try:
            cursor = self._connection.cursor()
            try:
                cursor.execute(sql, *params)
                if cursor.description is None:
                    return []
                columns = [desc[0] for desc in cursor.description]
                return [dict(zip(columns, row, strict=False)) for row in cursor.fetchall()]
            finally:
                cursor.close()
        except Exception as exc:
            raise CategoryUnavailableError(f"query failed: {exc}") from exc

    def _to_utc(self, value: datetime | None, *, timeout: float) -> datetime | None:
        if value is None:
            return None
        # The 1900-01-01 "never" sentinel must not drift with the clock offset.
        if value.replace(tzinfo=None) <= CHECKDB_EPOCH.replace(tzinfo=None):
            return CHECKDB_EPOCH
        if value.tzinfo is not None:
            return value.astimezone(UTC)
        if self._clock_offset is None:
            rows = self._query(CLOCK_OFFSET_SQL, timeout=timeout)
            minutes = int(rows[0]["offset_minutes"]) if rows else 0
            self._clock_offset = timedelta(minutes=minutes)
        return (value + self._clock_offset).replace(tzinfo=UTC)

    # ------------------------------------------------------------------
    def server_info(self, *, timeout: float) -> ServerInfo:
        """Return version and hardware facts."""
        rows = self._query(SERVER_INFO_SQL, timeout=timeout)
        if not rows:
            raise CategoryUnavailableError("server properties returned no rows")
        row = rows[0]
        product_version = str(row["product_version"] or "")
        return ServerInfo(
            product_version=product_version,
            major_version=parse_major_version(product_version),
            edition=str(row["edition"] or ""),
            physical_memory_mb=int(row["physical_memory_mb"] or 0),
            cpu_count=int(row["cpu_count"] or 0),
            numa_node_count=int(row["numa_node_count"] or 0),
            machine_name=row.get("machine_name"),
        )

    def config_values(self, *, timeout: float) -> Mapping[str, int]:
        """Return the relevant ``sys.configurations`` values in use."""
        placeholders = ", ".join("?" for _ in CONFIG_OPTION_NAMES)
        sql = (
            "SELECT name, CAST(value_in_use AS int) AS value "
            f"FROM sys.configurations WHERE name IN ({placeholders})"
        )
        rows = self._query(sql, timeout=timeout, params=CONFIG_OPTION_NAMES)
        return {str(row["name"]): int(row["value"]) for row in rows}

    def database_options(self, *, timeout: float) -> list[DatabaseOptions]:
        """Return online databases with options and VLF counts."""
        rows = self._query(DATABASE_OPTIONS_SQL, timeout=timeout)
        vlf_counts = self._vlf_counts([str(row["name"]) for row in rows], timeout=timeout)
        return [
            DatabaseOptions(
                name=str(row["name"]),
                auto_create_stats=bool(row["is_auto_create_stats_on"]),
                auto_update_stats=bool(row["is_auto_update_stats_on"]),
                page_verify=str(row["page_verify_option_desc"] or "NONE"),
                compatibility_level=int(row["compatibility_level"] or 0),
                recovery_model=str(row["recovery_model_desc"] or ""),
                vlf_count=vlf_counts.get(str(row["name"])),
            )
            for row in rows
        ]

    def _vlf_counts(self, names: Sequence[str], *, timeout: float) -> dict[str, int]:
        try:
            rows = self._query(VLF_COUNT_SQL, timeout=timeout)
        except CategoryUnavailableError as exc:
            LOGGER.info(
                "%s: sys.dm_db_log_info unavailable, using DBCC LOGINFO: %s",
                self.identity,
                exc,
            )
            return self._loginfo_counts(names, timeout=timeout)
        return {str(row["name"]): int(row["vlf_count"]) for row in rows}

    def _loginfo_counts(self, names: Sequence[str], *, timeout: float) -> dict[str, int]:
        # DBCC LOGINFO returns one row per virtual log file.
        counts: dict[str, int] = {}
        for name in names:
            sql = LOGINFO_SQL.format(database=_database_literal(name))
            try:
                counts[name] = len(self._query(sql, timeout=timeout))
            except CategoryUnavailableError as exc:
                LOGGER.info("%s: VLF count for %s unavailable: %s", self.identity, name, exc)
        return counts

    def file_growth(self, *, timeout: float) -> list[DatabaseFile]:
        """Return autogrowth metadata for every database file."""
        rows = self._query(FILE_GROWTH_SQL, timeout=timeout)
        files: list[DatabaseFile] = []
        for row in rows:
            file_type = str(row["type_desc"] or "")
            max_pages = int(row["max_size"])
            unlimited = max_pages == -1 or (
                file_type == "LOG" and max_pages == LOG_UNLIMITED_PAGES
            )
            is_percent = bool(row["is_percent_growth"])
            growth = int(row["growth"] or 0)
            files.append(
                DatabaseFile(
                    database=str(row["database_name"]),
                    logical_name=str(row["name"]),
                    file_type=file_type,
                    max_size_mb=-1 if unlimited else _mb_from_pages(max_pages),
                    is_percent_growth=is_percent,
                    growth=growth if is_percent else _mb_from_pages(growth),
                )
            )
        return files

    def trace_flags(self, *, timeout: float) -> list[int]:
        """Return trace flags enabled globally."""
        rows = self._query(TRACE_STATUS_SQL, timeout=timeout)
        return [
            int(row["TraceFlag"])
            for row in rows
            if int(row.get("Global", 0) or 0) == 1 and int(row.get("Status", 0) or 0) == 1
        ]

    def checkdb_history(self, *, timeout: float) -> list[CheckDbRecord]:
        """Return the last clean CHECKDB time per database."""
        rows = self._query(CHECKDB_SQL, timeout=timeout)
        records: list[CheckDbRecord] = []
        for row in rows:
            name = str(row["name"])
            last_good = row["last_good"]
            if last_good is None:
                last_good = self._dbinfo_last_known_good(name, timeout=timeout)
            records.append(
                CheckDbRecord(
                    database=name,
                    last_known_good=self._to_utc(last_good, timeout=timeout),
                )
            )
        return records

    def _dbinfo_last_known_good(self, database: str, *, timeout: float) -> datetime:
        sql = DBINFO_SQL.format(database=_database_literal(database))
        for row in self._query(sql, timeout=timeout):
            if row.get("Field") == DBINFO_LAST_KNOWN_GOOD:
                return _parse_server_datetime(row.get("VALUE"))
        raise CategoryUnavailableError(
            f"{database}: DBCC DBINFO reported no {DBINFO_LAST_KNOWN_GOOD}"
        )

    def backup_history(self, *, timeout: float) -> list[BackupRecord]:
        """Return the most recent full and log backups per database."""
        rows = self._query(BACKUP_HISTORY_SQL, timeout=timeout)
        return [
            BackupRecord(
                database=str(row["name"]),
                recovery_model=str(row["recovery_model_desc"] or ""),
                last_full_backup=self._to_utc(row["last_full"], timeout=timeout),
                last_log_backup=self._to_utc(row["last_log"], timeout=timeout),
            )
            for row in rows
        ]

    def tempdb_files(self, *, timeout: float) -> list[TempDbFile]:
        """Return tempdb data and log files."""
        rows = self._query(TEMPDB_FILES_SQL, timeout=timeout)
        return [
            TempDbFile(
                logical_name=str(row["name"]),
                file_type=str(row["type_desc"] or ""),
                size_mb=int(row["size_mb"] or 0),
            )
            for row in rows
        ]


@dataclass(slots=True)
class SqlServerMetricsProvider:
    """Open :class:`SqlServerSession` objects for inspected instances."""

    settings: ConnectionConfig
    login_timeout: float = 15.0
    connect_func: ConnectFunc = odbc_connect

    def connect(self, identity: InstanceIdentity, *, timeout: float) -> SqlServerSession:
        """Open a session or raise :class:`InstanceUnreachableError`."""
        connection_string = build_connection_string(identity, self.settings)
        LOGGER.debug("Connecting to %s", identity.connection_name)
        try:
            connection = self.connect_func(connection_string, self.login_timeout)
        except InstanceUnreachableError:
            raise
        except Exception as exc:
            raise InstanceUnreachableError(
                f"{identity.connection_name}: {exc}"
            ) from exc
        return SqlServerSession(identity, connection)


__all__ = [
    "CONFIG_OPTION_NAMES",
    "SqlServerMetricsProvider",
    "SqlServerSession",
    "build_connection_string",
    "odbc_connect",
]
