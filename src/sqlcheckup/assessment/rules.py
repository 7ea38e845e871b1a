"""Best-practice rule catalogue.

Every rule is a pure function of an :class:`InstanceSnapshot` and returns a
:class:`RuleVerdict`. Rules never perform I/O and never raise for missing or
odd input: unavailable categories classify as REVIEW.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from types import MappingProxyType

from .models import RuleDefinition, RuleVerdict
from .snapshot import (
    CHECKDB_EPOCH,
    UNLIMITED_MEMORY_MB,
    EngineVersion,
    InstanceSnapshot,
)

MIN_SERVER_MEMORY = "min server memory (MB)"
MAX_SERVER_MEMORY = "max server memory (MB)"
OPTIMIZE_FOR_AD_HOC = "optimize for ad hoc workloads"
REMOTE_ADMIN_CONNECTIONS = "remote admin connections"
BACKUP_COMPRESSION_DEFAULT = "backup compression default"
MAX_DEGREE_OF_PARALLELISM = "max degree of parallelism"

EXPECTED_MIN_MEMORY_MB = 1024
MAX_MEMORY_RATIO = 0.75
VLF_THRESHOLD = 1000
AUTOGROWTH_LIMIT_MB = 1024
CHECKDB_MAX_AGE = timedelta(days=7)
FULL_BACKUP_MAX_AGE = timedelta(days=7)
LOG_BACKUP_MAX_AGE = timedelta(hours=24)

LOGGED_RECOVERY_MODELS = frozenset({"FULL", "BULK_LOGGED"})
NON_BACKUP_DATABASES = frozenset({"tempdb"})

REQUIRED_TRACE_FLAGS: Mapping[EngineVersion, frozenset[int]] = MappingProxyType(
    {
        EngineVersion.SQL2012: frozenset({1118, 4199}),
        EngineVersion.SQL2014: frozenset({1118, 4199}),
        EngineVersion.SQL2016: frozenset({4199, 7745}),
        EngineVersion.SQL2017: frozenset({4199, 7745, 12310}),
        EngineVersion.SQL2019: frozenset({4199, 7745, 12310}),
        EngineVersion.SQL2022: frozenset({4199, 7745, 12656, 12618}),
    }
)

# Minimum tempdb data files keyed by CPU count; any other count needs 8.
TEMPDB_MIN_FILES_BY_CPU: Mapping[int, int] = MappingProxyType({4: 2, 8: 4})
TEMPDB_DEFAULT_MIN_FILES = 8
TEMPDB_FILE_MULTIPLE = 4


def collect_rules() -> Sequence[RuleDefinition]:
    """Return the rule catalogue in report column order."""
    return (
        RuleDefinition("memory", "Memory", evaluate_memory),
        RuleDefinition("instance_config", "InstanceConfig", evaluate_instance_config),
        RuleDefinition("maxdop", "MaxDOP", evaluate_maxdop),
        RuleDefinition("database_options", "DatabaseOptions", evaluate_database_options),
        RuleDefinition("compatibility_level", "CompatibilityLevel", evaluate_compatibility_level),
        RuleDefinition("vlf_count", "VLFCount", evaluate_vlf_count),
        RuleDefinition("autogrowth", "Autogrowth", evaluate_autogrowth),
        RuleDefinition("checkdb", "CheckDB", evaluate_checkdb),
        RuleDefinition("full_backup", "FullBackup", evaluate_full_backup),
        RuleDefinition("log_backup", "LogBackup", evaluate_log_backup),
        RuleDefinition("trace_flags", "TraceFlags", evaluate_trace_flags),
        RuleDefinition("tempdb", "TempDB", evaluate_tempdb),
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _unavailable(*categories: str) -> RuleVerdict:
    joined = ", ".join(categories)
    return RuleVerdict.review(f"Data unavailable: {joined}.")


def _join(items: Iterable[str]) -> str:
    return ", ".join(items)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _is_stale(value: datetime | None, now: datetime, max_age: timedelta) -> bool:
    if value is None:
        return True
    moment = _as_utc(value)
    if moment <= CHECKDB_EPOCH:
        return True
    return now - moment > max_age


def _describe_timestamp(value: datetime | None) -> str:
    if value is None or _as_utc(value) <= CHECKDB_EPOCH:
        return "never"
    return _as_utc(value).strftime("%Y-%m-%d %H:%M")


def recommend_maxdop(cpu_count: int, numa_node_count: int, major_version: int) -> int:
    """Return the recommended MaxDOP for the given topology.

    ``0`` is returned for any combination the policy does not cover, which
    can never match a sane configured value.
    """
    if cpu_count <= 0 or numa_node_count <= 0:
        return 0
    if numa_node_count == 1:
        return min(cpu_count, 8)

    per_node = math.ceil(cpu_count / numa_node_count)
    if major_version >= EngineVersion.SQL2016:
        if per_node <= 15:
            return per_node
        return min(math.ceil(per_node / 2), 16)
    if per_node < 8:
        return per_node
    return 8


def tempdb_minimum_files(cpu_count: int) -> int:
    """Return the minimum tempdb data file count for *cpu_count* CPUs."""
    return TEMPDB_MIN_FILES_BY_CPU.get(cpu_count, TEMPDB_DEFAULT_MIN_FILES)


def native_compatibility_level(version: EngineVersion) -> int | None:
    """Return the default compatibility level of *version* (e.g. 150)."""
    if version is EngineVersion.UNKNOWN:
        return None
    return int(version) * 10


# ---------------------------------------------------------------------------
# Instance-level rules
# ---------------------------------------------------------------------------


def evaluate_memory(snapshot: InstanceSnapshot) -> RuleVerdict:
    """Check min/max server memory against physical memory."""
    info = snapshot.server_info
    config = snapshot.config_values
    if info is None or config is None:
        missing = [
            name
            for name, value in (("server_info", info), ("config_values", config))
            if value is None
        ]
        return _unavailable(*missing)

    min_mb = config.get(MIN_SERVER_MEMORY)
    max_mb = config.get(MAX_SERVER_MEMORY)
    if min_mb is None or max_mb is None:
        return RuleVerdict.review("Memory configuration values were not reported.")

    total = info.physical_memory_mb
    floor = math.ceil(MAX_MEMORY_RATIO * total)
    problems: list[str] = []
    if max_mb == UNLIMITED_MEMORY_MB:
        problems.append("max server memory is not set (unlimited)")
    elif total <= 0:
        problems.append("physical memory size is unknown")
    elif max_mb >= total:
        problems.append(f"max server memory {max_mb} MB is not below physical memory {total} MB")
    elif max_mb < floor:
        problems.append(f"max server memory {max_mb} MB is below 75% of physical ({floor} MB)")
    if min_mb != EXPECTED_MIN_MEMORY_MB:
        problems.append(f"min server memory is {min_mb} MB, expected {EXPECTED_MIN_MEMORY_MB} MB")

    if problems:
        return RuleVerdict.review("; ".join(problems) + ".")
    return RuleVerdict.ok(f"min={min_mb} MB, max={max_mb} MB, physical={total} MB.")


def evaluate_instance_config(snapshot: InstanceSnapshot) -> RuleVerdict:
    """Check ad hoc workload, DAC and backup compression settings."""
    config = snapshot.config_values
    if config is None:
        return _unavailable("config_values")

    problems: list[str] = []
    for option in (OPTIMIZE_FOR_AD_HOC, REMOTE_ADMIN_CONNECTIONS):
        value = config.get(option)
        if value is None:
            problems.append(f"'{option}' not reported")
        elif value != 1:
            problems.append(f"'{option}' is disabled")

    # Express and Web editions do not expose backup compression.
    compression = config.get(BACKUP_COMPRESSION_DEFAULT)
    if compression is not None and compression != 1:
        problems.append(f"'{BACKUP_COMPRESSION_DEFAULT}' is disabled")

    if problems:
        return RuleVerdict.review("; ".join(problems) + ".")
    if compression is None:
        return RuleVerdict.ok(
            "Ad hoc optimisation and remote DAC enabled; backup compression not supported."
        )
    return RuleVerdict.ok("Ad hoc optimisation, remote DAC and backup compression enabled.")


def evaluate_maxdop(snapshot: InstanceSnapshot) -> RuleVerdict:
    """Compare configured MaxDOP with the topology-based recommendation."""
    info = snapshot.server_info
    config = snapshot.config_values
    if info is None or config is None:
        missing = [
            name
            for name, value in (("server_info", info), ("config_values", config))
            if value is None
        ]
        return _unavailable(*missing)

    configured = config.get(MAX_DEGREE_OF_PARALLELISM)
    if configured is None:
        return RuleVerdict.review("MaxDOP configuration value was not reported.")

    recommended = recommend_maxdop(info.cpu_count, info.numa_node_count, info.major_version)
    topology = f"{info.cpu_count} CPUs across {info.numa_node_count} NUMA node(s)"
    if configured == 0:
        return RuleVerdict.review(
            f"MaxDOP is 0 (unlimited); recommended {recommended} for {topology}."
        )
    if recommended == 0:
        return RuleVerdict.review(f"No MaxDOP recommendation available for {topology}.")
    if configured != recommended:
        return RuleVerdict.review(
            f"MaxDOP is {configured}; recommended {recommended} for {topology}."
        )
    return RuleVerdict.ok(f"MaxDOP {configured} matches recommendation for {topology}.")


def evaluate_trace_flags(snapshot: InstanceSnapshot) -> RuleVerdict:
    """Check that the version's required global trace flags are enabled."""
    flags = snapshot.trace_flags
    if flags is None:
        return _unavailable("trace_flags")
    if snapshot.server_info is None:
        return _unavailable("server_info")

    version = snapshot.engine_version
    required = REQUIRED_TRACE_FLAGS.get(version)
    if required is None:
        return RuleVerdict.review(
            "No trace flag policy defined for engine version "
            f"{snapshot.server_info.major_version}."
        )
    expected = _join(str(flag) for flag in sorted(required))
    if not flags:
        return RuleVerdict.review(f"No trace flags enabled; required: {expected}.")
    missing = sorted(required - flags)
    if missing:
        return RuleVerdict.review(
            f"Missing required trace flags: {_join(str(flag) for flag in missing)}."
        )
    return RuleVerdict.ok(f"Required trace flags enabled: {expected}.")


def evaluate_tempdb(snapshot: InstanceSnapshot) -> RuleVerdict:
    """Check tempdb data file count and sizing against CPU count."""
    files = snapshot.tempdb_files
    info = snapshot.server_info
    if files is None or info is None:
        missing = [
            name
            for name, value in (("server_info", info), ("tempdb_files", files))
            if value is None
        ]
        return _unavailable(*missing)

    data_files = [entry for entry in files if entry.is_data]
    count = len(data_files)
    if count == 0:
        return RuleVerdict.review("No tempdb data files reported.")
    if count == 1 and info.major_version >= EngineVersion.SQL2022:
        return RuleVerdict.ok("Single tempdb data file on SQL Server 2022 or later.")

    minimum = tempdb_minimum_files(info.cpu_count)
    sizes = sorted({entry.size_mb for entry in data_files})
    problems: list[str] = []
    if count % TEMPDB_FILE_MULTIPLE != 0:
        problems.append(f"{count} data files is not a multiple of {TEMPDB_FILE_MULTIPLE}")
    if count < minimum:
        problems.append(
            f"{count} data files is below the minimum of {minimum} for {info.cpu_count} CPUs"
        )
    if len(sizes) > 1:
        problems.append(f"data file sizes differ ({_join(f'{size} MB' for size in sizes)})")

    if problems:
        return RuleVerdict.review("; ".join(problems) + ".")
    return RuleVerdict.ok(f"{count} equally sized data files of {sizes[0]} MB.")


# ---------------------------------------------------------------------------
# Database-level rules
# ---------------------------------------------------------------------------


def evaluate_database_options(snapshot: InstanceSnapshot) -> RuleVerdict:
    """Check statistics options and page verification on every database."""
    databases = snapshot.database_options
    if databases is None:
        return _unavailable("database_options")
    if not databases:
        return RuleVerdict.review("No databases reported.")

    offenders: list[str] = []
    for database in databases:
        reasons: list[str] = []
        if not database.auto_create_stats:
            reasons.append("auto create statistics off")
        if not database.auto_update_stats:
            reasons.append("auto update statistics off")
        if database.page_verify.upper() != "CHECKSUM":
            reasons.append(f"page verify {database.page_verify or 'NONE'}")
        if reasons:
            offenders.append(f"{database.name} ({_join(reasons)})")

    if offenders:
        return RuleVerdict.review("; ".join(offenders) + ".")
    return RuleVerdict.ok(f"All {len(databases)} databases use recommended options.")


def evaluate_compatibility_level(snapshot: InstanceSnapshot) -> RuleVerdict:
    """Check that every database runs at the engine's native level."""
    databases = snapshot.database_options
    if databases is None:
        return _unavailable("database_options")
    if snapshot.server_info is None:
        return _unavailable("server_info")

    native = native_compatibility_level(snapshot.engine_version)
    if native is None:
        return RuleVerdict.review(
            "Native compatibility level unknown for engine version "
            f"{snapshot.server_info.major_version}."
        )
    if not databases:
        return RuleVerdict.review("No databases reported.")

    behind = [
        f"{database.name} ({database.compatibility_level})"
        for database in databases
        if database.compatibility_level < native
    ]
    if behind:
        return RuleVerdict.review(f"Below native level {native}: {_join(behind)}.")
    return RuleVerdict.ok(f"All databases at compatibility level {native}.")


def evaluate_vlf_count(snapshot: InstanceSnapshot) -> RuleVerdict:
    """Flag databases whose transaction log has too many VLFs."""
    databases = snapshot.database_options
    if databases is None:
        return _unavailable("database_options")

    counted = [database for database in databases if database.vlf_count is not None]
    if not counted:
        return _unavailable("vlf_count")

    offenders = sorted(
        (database for database in counted if (database.vlf_count or 0) > VLF_THRESHOLD),
        key=lambda database: (-(database.vlf_count or 0), database.name),
    )
    if offenders:
        listed = _join(f"{database.name} ({database.vlf_count})" for database in offenders)
        return RuleVerdict.review(f"More than {VLF_THRESHOLD} VLFs: {listed}.")
    highest = max(database.vlf_count or 0 for database in counted)
    return RuleVerdict.ok(f"Highest VLF count is {highest}.")


def evaluate_autogrowth(snapshot: InstanceSnapshot) -> RuleVerdict:
    """Flag unlimited, percentage-based and oversized file growth."""
    files = snapshot.file_growth
    if files is None:
        return _unavailable("file_growth")
    if not files:
        return RuleVerdict.review("No database files reported.")

    categories: dict[str, list[str]] = defaultdict(list)
    for entry in files:
        label = f"{entry.database}.{entry.logical_name}"
        if entry.max_size_mb == -1:
            categories["Unlimited growth"].append(label)
        if entry.is_percent_growth:
            categories["Percentage growth"].append(label)
        elif entry.growth > AUTOGROWTH_LIMIT_MB:
            categories[f"Growth above {AUTOGROWTH_LIMIT_MB} MB"].append(label)

    if categories:
        parts = [f"{name}: {_join(labels)}" for name, labels in categories.items()]
        return RuleVerdict.review("; ".join(parts) + ".")
    return RuleVerdict.ok(f"All {len(files)} files use bounded fixed-size growth.")


def evaluate_checkdb(snapshot: InstanceSnapshot) -> RuleVerdict:
    """Check that DBCC CHECKDB completed cleanly within the last 7 days."""
    history = snapshot.checkdb_history
    if history is None:
        return _unavailable("checkdb_history")
    records = [record for record in history if record.database not in NON_BACKUP_DATABASES]
    if not records:
        return RuleVerdict.review("No integrity check history reported.")

    now = _as_utc(snapshot.collected_at)
    stale = [
        f"{record.database} ({_describe_timestamp(record.last_known_good)})"
        for record in records
        if _is_stale(record.last_known_good, now, CHECKDB_MAX_AGE)
    ]
    if stale:
        return RuleVerdict.review(f"No CHECKDB within 7 days: {_join(stale)}.")
    return RuleVerdict.ok(f"All {len(records)} databases checked within 7 days.")


def evaluate_full_backup(snapshot: InstanceSnapshot) -> RuleVerdict:
    """Check that every database has a full backup within 7 days."""
    history = snapshot.backup_history
    if history is None:
        return _unavailable("backup_history")
    records = [record for record in history if record.database not in NON_BACKUP_DATABASES]
    if not records:
        return RuleVerdict.review("No backup history reported.")

    now = _as_utc(snapshot.collected_at)
    stale = [
        f"{record.database} ({_describe_timestamp(record.last_full_backup)})"
        for record in records
        if _is_stale(record.last_full_backup, now, FULL_BACKUP_MAX_AGE)
    ]
    if stale:
        return RuleVerdict.review(f"No full backup within 7 days: {_join(stale)}.")
    return RuleVerdict.ok(f"All {len(records)} databases have a full backup within 7 days.")


def evaluate_log_backup(snapshot: InstanceSnapshot) -> RuleVerdict:
    """Check log backups for databases in FULL or BULK_LOGGED recovery."""
    history = snapshot.backup_history
    if history is None:
        return _unavailable("backup_history")
    records = [record for record in history if record.database not in NON_BACKUP_DATABASES]
    if not records:
        return RuleVerdict.review("No backup history reported.")

    logged = [
        record for record in records if record.recovery_model.upper() in LOGGED_RECOVERY_MODELS
    ]
    if not logged:
        return RuleVerdict.not_applicable("All databases use the SIMPLE recovery model.")

    now = _as_utc(snapshot.collected_at)
    stale = [
        f"{record.database} ({_describe_timestamp(record.last_log_backup)})"
        for record in logged
        if _is_stale(record.last_log_backup, now, LOG_BACKUP_MAX_AGE)
    ]
    if stale:
        return RuleVerdict.review(f"No log backup within 24 hours: {_join(stale)}.")
    return RuleVerdict.ok(f"All {len(logged)} logged databases have a log backup within 24 hours.")


__all__ = [
    "REQUIRED_TRACE_FLAGS",
    "TEMPDB_MIN_FILES_BY_CPU",
    "collect_rules",
    "evaluate_autogrowth",
    "evaluate_checkdb",
    "evaluate_compatibility_level",
    "evaluate_database_options",
    "evaluate_full_backup",
    "evaluate_instance_config",
    "evaluate_log_backup",
    "evaluate_maxdop",
    "evaluate_memory",
    "evaluate_tempdb",
    "evaluate_trace_flags",
    "evaluate_vlf_count",
    "native_compatibility_level",
    "recommend_maxdop",
    "tempdb_minimum_files",
]
