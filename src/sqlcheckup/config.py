"""Configuration loader for sqlcheckup.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``~/.config/sqlcheckup/config.yml`` (or an override path).
3. Environment variables prefixed with ``SQLCHECKUP_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SQLCHECKUP_EXECUTOR__MAX_CONCURRENCY=16
    export SQLCHECKUP_CONNECTION__TRUSTED_CONNECTION=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "SQLCHECKUP_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ExecutorConfig:
    """Worker pool and timeout settings for collection runs."""

    max_concurrency: int = 8
    query_timeout: float = 600.0
    login_timeout: float = 15.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "max_concurrency": self.max_concurrency,
            "query_timeout": self.query_timeout,
            "login_timeout": self.login_timeout,
        }


@dataclass(frozen=True)
class ConnectionConfig:
    """ODBC connection settings shared by every inspected instance."""

    driver: str = "ODBC Driver 18 for SQL Server"
    trusted_connection: bool = True
    username: str | None = None
    password: str | None = None
    encrypt: bool = True
    trust_server_certificate: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (password redacted)."""
        return {
            "driver": self.driver,
            "trusted_connection": self.trusted_connection,
            "username": self.username,
            "password": "***" if self.password else None,
            "encrypt": self.encrypt,
            "trust_server_certificate": self.trust_server_certificate,
        }


@dataclass(frozen=True)
class ExportConfig:
    """Defaults for the delimited report file."""

    output_dir: Path = Path(".")
    delimiter: str = ";"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"output_dir": str(self.output_dir), "delimiter": self.delimiter}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for sqlcheckup."""

    config_file: Path
    logs_dir: Path
    domain_suffix: str | None
    use_fqdn: bool
    executor: ExecutorConfig
    connection: ConnectionConfig
    export: ExportConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "domain_suffix": self.domain_suffix,
            "use_fqdn": self.use_fqdn,
            "executor": self.executor.to_dict(),
            "connection": self.connection.to_dict(),
            "export": self.export.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/sqlcheckup/config.yml",
    "logs_dir": "~/.local/state/sqlcheckup/logs",
    "domain_suffix": None,
    "use_fqdn": False,
    "executor": {
        "max_concurrency": 8,
        "query_timeout": 600.0,
        "login_timeout": 15.0,
    },
    "connection": {
        "driver": "ODBC Driver 18 for SQL Server",
        "trusted_connection": True,
        "username": None,
        "password": None,
        "encrypt": True,
        "trust_server_certificate": True,
    },
    "export": {
        "output_dir": ".",
        "delimiter": ";",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "executor": {"max_concurrency", "query_timeout", "login_timeout"},
    "connection": {
        "driver",
        "trusted_connection",
        "username",
        "password",
        "encrypt",
        "trust_server_certificate",
    },
    "export": {"output_dir", "delimiter"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, _as_dict(overrides, "overrides"))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    domain = raw.get("domain_suffix")
    if domain is not None and not isinstance(domain, str):
        raise ConfigError("domain_suffix must be a string or null.")

    delimiter = _as_dict(raw.get("export"), "export").get("delimiter")
    if delimiter is not None and (not isinstance(delimiter, str) or len(delimiter) != 1):
        raise ConfigError("export.delimiter must be a single character.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    logs_dir = _to_path(raw.get("logs_dir"))

    domain_raw = raw.get("domain_suffix")
    domain_suffix = str(domain_raw).strip().lstrip(".") if domain_raw else None

    executor_mapping = _as_dict(raw.get("executor"), "executor")
    defaults = ExecutorConfig()
    max_concurrency = _expect_int(
        executor_mapping.get("max_concurrency"),
        "executor.max_concurrency",
        default=defaults.max_concurrency,
    )
    if max_concurrency < 1:
        raise ConfigError("executor.max_concurrency must be at least 1.")
    executor = ExecutorConfig(
        max_concurrency=max_concurrency,
        query_timeout=_expect_positive_float(
            executor_mapping.get("query_timeout"),
            "executor.query_timeout",
            default=defaults.query_timeout,
        ),
        login_timeout=_expect_positive_float(
            executor_mapping.get("login_timeout"),
            "executor.login_timeout",
            default=defaults.login_timeout,
        ),
    )

    connection_mapping = _as_dict(raw.get("connection"), "connection")
    username = connection_mapping.get("username")
    password = connection_mapping.get("password")
    connection = ConnectionConfig(
        driver=str(connection_mapping.get("driver", ConnectionConfig.driver)),
        trusted_connection=_expect_bool(
            connection_mapping.get("trusted_connection"),
            "connection.trusted_connection",
            default=True,
        ),
        username=str(username) if username else None,
        password=str(password) if password else None,
        encrypt=_expect_bool(connection_mapping.get("encrypt"), "connection.encrypt", default=True),
        trust_server_certificate=_expect_bool(
            connection_mapping.get("trust_server_certificate"),
            "connection.trust_server_certificate",
            default=True,
        ),
    )
    if not connection.trusted_connection and not connection.username:
        raise ConfigError(
            "connection.username is required when connection.trusted_connection is false."
        )

    export_mapping = _as_dict(raw.get("export"), "export")
    export = ExportConfig(
        output_dir=_to_path(export_mapping.get("output_dir", ".")),
        delimiter=str(export_mapping.get("delimiter", ";")),
    )

    return AppConfig(
        config_file=config_file,
        logs_dir=logs_dir,
        domain_suffix=domain_suffix or None,
        use_fqdn=_expect_bool(raw.get("use_fqdn"), "use_fqdn", default=False),
        executor=executor,
        connection=connection,
        export=export,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "ConnectionConfig",
    "ExecutorConfig",
    "ExportConfig",
    "load_config",
]
