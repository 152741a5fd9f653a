from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from utils.constants import TICKET_ID_PREFIX, TICKET_ID_WIDTH


class ConfigError(RuntimeError):
    pass


@dataclass(slots=True)
class DatabaseConfig:
    url: str = "sqlite:///./data/intake.db"
    pool_min_size: int = 2
    pool_max_size: int = 10
    timeout_seconds: int = 30


@dataclass(slots=True)
class RedisConfig:
    enabled: bool = False
    url: str = "redis://localhost:6379/0"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    directory: str = "logs"
    file_name: str = "intake.log"
    max_bytes: int = 10_000_000
    backup_count: int = 10
    json_console: bool = False


@dataclass(slots=True)
class SecurityConfig:
    wizard_start_cooldown_seconds: int = 5
    wizard_start_max_per_hour: int = 30


@dataclass(slots=True)
class WizardConfig:
    session_ttl_seconds: int = 3600
    purge_interval_seconds: int = 300
    categories: list[str] = field(
        default_factory=lambda: ["electrical", "plumbing", "carpentry", "housekeeping", "it"]
    )
    buildings: list[str] = field(default_factory=lambda: ["A", "B", "C"])
    floors: list[str] = field(default_factory=lambda: ["1", "2", "3"])
    rooms_per_floor: int = 3


@dataclass(slots=True)
class LifecycleConfig:
    max_conflict_retries: int = 3
    require_reopen_reason: bool = True
    ticket_id_prefix: str = TICKET_ID_PREFIX
    ticket_id_width: int = TICKET_ID_WIDTH


@dataclass(slots=True)
class FastApiConfig:
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    api_key: str = ""


@dataclass(slots=True)
class I18NConfig:
    default_locale: str = "en-US"
    supported_locales: list[str] = field(default_factory=lambda: ["en-US"])


@dataclass(slots=True)
class AppConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    wizard: WizardConfig = field(default_factory=WizardConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    fastapi: FastApiConfig = field(default_factory=FastApiConfig)
    i18n: I18NConfig = field(default_factory=I18NConfig)


def _get_env_str(key: str | None) -> str | None:
    if key is None:
        return None
    value = os.getenv(key)
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: Any, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_str_list(value: Any, default: list[str]) -> list[str]:
    if value is None:
        return list(default)
    if not isinstance(value, list):
        raise ConfigError(f"Expected a list, got {type(value).__name__}")
    return [str(item).strip() for item in value if str(item).strip()]


class _Section:
    """One top-level mapping of config.yaml. An environment variable, when named and set, wins."""

    def __init__(self, raw: dict[str, Any], name: str) -> None:
        values = raw.get(name) or {}
        if not isinstance(values, dict):
            raise ConfigError(f"Config section '{name}' must be a mapping")
        self.name = name
        self.values = values

    def _pick(self, key: str, env: str | None) -> Any:
        override = _get_env_str(env)
        return override if override is not None else self.values.get(key)

    def text(self, key: str, default: str, env: str | None = None) -> str:
        value = self._pick(key, env)
        return default if value is None else str(value)

    def integer(self, key: str, default: int, env: str | None = None) -> int:
        return _as_int(self._pick(key, env), default)

    def flag(self, key: str, default: bool, env: str | None = None) -> bool:
        return _as_bool(self._pick(key, env), default)

    def names(self, key: str, default: list[str]) -> list[str]:
        try:
            return _as_str_list(self.values.get(key), default)
        except ConfigError as exc:
            raise ConfigError(f"{self.name}.{key}: {exc}") from exc


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing config file: {path}")
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    return raw


def _database(section: _Section) -> DatabaseConfig:
    d = DatabaseConfig()
    return DatabaseConfig(
        url=section.text("url", d.url, env="DATABASE_URL"),
        pool_min_size=section.integer("pool_min_size", d.pool_min_size, env="DB_POOL_MIN"),
        pool_max_size=section.integer("pool_max_size", d.pool_max_size, env="DB_POOL_MAX"),
        timeout_seconds=section.integer("timeout_seconds", d.timeout_seconds, env="DB_TIMEOUT_SECONDS"),
    )


def _redis(section: _Section) -> RedisConfig:
    d = RedisConfig()
    return RedisConfig(
        enabled=section.flag("enabled", d.enabled, env="REDIS_ENABLED"),
        url=section.text("url", d.url, env="REDIS_URL"),
    )


def _logging(section: _Section) -> LoggingConfig:
    d = LoggingConfig()
    return LoggingConfig(
        level=section.text("level", d.level, env="LOG_LEVEL"),
        directory=section.text("directory", d.directory),
        file_name=section.text("file_name", d.file_name),
        max_bytes=section.integer("max_bytes", d.max_bytes),
        backup_count=section.integer("backup_count", d.backup_count),
        json_console=section.flag("json_console", d.json_console),
    )


def _security(section: _Section) -> SecurityConfig:
    d = SecurityConfig()
    return SecurityConfig(
        wizard_start_cooldown_seconds=section.integer(
            "wizard_start_cooldown_seconds", d.wizard_start_cooldown_seconds
        ),
        wizard_start_max_per_hour=section.integer("wizard_start_max_per_hour", d.wizard_start_max_per_hour),
    )


def _wizard(section: _Section) -> WizardConfig:
    d = WizardConfig()
    cfg = WizardConfig(
        session_ttl_seconds=section.integer(
            "session_ttl_seconds", d.session_ttl_seconds, env="WIZARD_SESSION_TTL_SECONDS"
        ),
        purge_interval_seconds=section.integer("purge_interval_seconds", d.purge_interval_seconds),
        categories=section.names("categories", d.categories),
        buildings=section.names("buildings", d.buildings),
        floors=section.names("floors", d.floors),
        rooms_per_floor=section.integer("rooms_per_floor", d.rooms_per_floor),
    )
    if cfg.session_ttl_seconds <= 0:
        raise ConfigError("wizard.session_ttl_seconds must be positive")
    if cfg.rooms_per_floor < 1:
        raise ConfigError("wizard.rooms_per_floor must be at least 1")
    if not cfg.buildings or not cfg.floors:
        raise ConfigError("wizard.buildings and wizard.floors must not be empty")
    return cfg


def _lifecycle(section: _Section) -> LifecycleConfig:
    d = LifecycleConfig()
    cfg = LifecycleConfig(
        max_conflict_retries=section.integer("max_conflict_retries", d.max_conflict_retries),
        require_reopen_reason=section.flag("require_reopen_reason", d.require_reopen_reason),
        ticket_id_prefix=section.text("ticket_id_prefix", d.ticket_id_prefix),
        ticket_id_width=section.integer("ticket_id_width", d.ticket_id_width),
    )
    if cfg.max_conflict_retries < 0:
        raise ConfigError("lifecycle.max_conflict_retries must not be negative")
    return cfg


def _fastapi(section: _Section) -> FastApiConfig:
    d = FastApiConfig()
    return FastApiConfig(
        enabled=section.flag("enabled", d.enabled, env="API_ENABLED"),
        host=section.text("host", d.host),
        port=section.integer("port", d.port, env="API_PORT"),
        api_key=section.text("api_key", d.api_key, env="INTAKE_API_KEY"),
    )


def _i18n(section: _Section) -> I18NConfig:
    d = I18NConfig()
    cfg = I18NConfig(
        default_locale=section.text("default_locale", d.default_locale),
        supported_locales=section.names("supported_locales", d.supported_locales),
    )
    if cfg.default_locale not in cfg.supported_locales:
        raise ConfigError("i18n.default_locale must be one of i18n.supported_locales")
    return cfg


def load_config(config_path: Path) -> AppConfig:
    load_dotenv(config_path.parent.parent / ".env")
    raw = _load_yaml(config_path)
    return AppConfig(
        database=_database(_Section(raw, "database")),
        redis=_redis(_Section(raw, "redis")),
        logging=_logging(_Section(raw, "logging")),
        security=_security(_Section(raw, "security")),
        wizard=_wizard(_Section(raw, "wizard")),
        lifecycle=_lifecycle(_Section(raw, "lifecycle")),
        fastapi=_fastapi(_Section(raw, "fastapi")),
        i18n=_i18n(_Section(raw, "i18n")),
    )
