"""Configuration management for the users service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

DEFAULT_DATABASE_URL = "postgresql+psycopg://localhost:6432/usersdb"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
LOG_LEVELS = ("critical", "error", "warning", "info", "debug", "trace")


class ConfigurationError(ValueError):
    """Raised when the service configuration is invalid."""


def _as_bool(value: object, name: str) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value {value!r} for {name}")


def _as_int(value: object, name: str) -> int:
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise ConfigurationError(f"Invalid integer value {value!r} for {name}") from exc


def _as_float(value: object, name: str) -> float:
    try:
        return float(str(value).strip())
    except ValueError as exc:
        raise ConfigurationError(f"Invalid number {value!r} for {name}") from exc


@dataclass(frozen=True)
class PoolSettings:
    """Sizing and timeouts for the database connection pool."""

    min_size: int = 2
    max_size: int = 10
    idle_timeout: float = 30.0
    connect_timeout: float = 2.0

    def __post_init__(self) -> None:
        if self.min_size < 1:
            raise ConfigurationError("Pool min_size must be at least 1")
        if self.max_size < self.min_size:
            raise ConfigurationError("Pool max_size must not be smaller than min_size")
        if self.idle_timeout <= 0 or self.connect_timeout <= 0:
            raise ConfigurationError("Pool timeouts must be positive")

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "PoolSettings":
        defaults = PoolSettings()
        return PoolSettings(
            min_size=_as_int(data.get("min_size", defaults.min_size), "database.pool.min_size"),
            max_size=_as_int(data.get("max_size", defaults.max_size), "database.pool.max_size"),
            idle_timeout=_as_float(
                data.get("idle_timeout", defaults.idle_timeout), "database.pool.idle_timeout"
            ),
            connect_timeout=_as_float(
                data.get("connect_timeout", defaults.connect_timeout),
                "database.pool.connect_timeout",
            ),
        )


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the HTTP service and its database."""

    database_url: str = DEFAULT_DATABASE_URL
    pool: PoolSettings = field(default_factory=PoolSettings)
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = "info"
    schema_fail_fast: bool = True

    def __post_init__(self) -> None:
        if self.log_level not in LOG_LEVELS:
            raise ConfigurationError(
                f"Invalid log level {self.log_level!r}; expected one of {', '.join(LOG_LEVELS)}"
            )
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"Port {self.port} is out of range")

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "Settings":
        """Create :class:`Settings` from the parsed YAML document."""

        database = data.get("database") or {}
        server = data.get("server") or {}
        if not isinstance(database, Mapping) or not isinstance(server, Mapping):
            raise ConfigurationError("'database' and 'server' must be mappings")
        pool = database.get("pool") or {}
        if not isinstance(pool, Mapping):
            raise ConfigurationError("'database.pool' must be a mapping")

        defaults = Settings()
        return Settings(
            database_url=str(database.get("url") or defaults.database_url),
            pool=PoolSettings.from_dict(pool),
            host=str(server.get("host") or defaults.host),
            port=_as_int(server.get("port", defaults.port), "server.port"),
            log_level=str(data.get("log_level") or defaults.log_level).lower(),
            schema_fail_fast=_as_bool(
                data.get("schema_fail_fast", defaults.schema_fail_fast), "schema_fail_fast"
            ),
        )


_POOL_ENV = {
    "USERSVC_POOL_MIN": ("min_size", _as_int),
    "USERSVC_POOL_MAX": ("max_size", _as_int),
    "USERSVC_POOL_IDLE_TIMEOUT": ("idle_timeout", _as_float),
    "USERSVC_POOL_CONNECT_TIMEOUT": ("connect_timeout", _as_float),
}

_SETTINGS_ENV = {
    "USERSVC_DATABASE_URL": ("database_url", lambda value, _: value),
    "USERSVC_HOST": ("host", lambda value, _: value),
    "USERSVC_PORT": ("port", _as_int),
    "USERSVC_LOG_LEVEL": ("log_level", lambda value, _: value.lower()),
    "USERSVC_SCHEMA_FAIL_FAST": ("schema_fail_fast", _as_bool),
}


def _collect(environ: Mapping[str, str], table: Mapping[str, tuple]) -> Dict[str, object]:
    updates: Dict[str, object] = {}
    for name, (attribute, convert) in table.items():
        value = environ.get(name)
        if value is None or value.strip() == "":
            continue
        updates[attribute] = convert(value.strip(), name)
    return updates


def _apply_environment(settings: Settings, environ: Mapping[str, str]) -> Settings:
    updates = _collect(environ, _SETTINGS_ENV)
    pool_updates = _collect(environ, _POOL_ENV)
    if pool_updates:
        updates["pool"] = replace(settings.pool, **pool_updates)
    return replace(settings, **updates) if updates else settings


def resolve_config_path(env_value: Optional[str]) -> Optional[Path]:
    """Resolve the path to the optional YAML configuration file."""
    if not env_value:
        return None
    return Path(env_value).expanduser().resolve(strict=False)


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from defaults, an optional YAML file and the environment."""
    if environ is None:
        environ = os.environ

    if config_path is None:
        config_path = resolve_config_path(environ.get("USERSVC_CONFIG"))

    settings = Settings()
    if config_path is not None:
        try:
            with config_path.open("r", encoding="utf-8") as handle:
                raw = yaml.safe_load(handle) or {}
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Configuration file not found: {config_path}") from exc
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Configuration file {config_path} is not valid YAML") from exc
        if not isinstance(raw, Mapping):
            raise ConfigurationError("Configuration file must contain a mapping at the top level")
        settings = Settings.from_dict(raw)

    return _apply_environment(settings, environ)


__all__ = [
    "ConfigurationError",
    "DEFAULT_DATABASE_URL",
    "PoolSettings",
    "Settings",
    "load_settings",
    "resolve_config_path",
]
