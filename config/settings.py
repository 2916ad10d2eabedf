"""
Configuration loader for the Meetapp subscription service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./meetapp.db"                # postgresql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"
    pool_size: int = 5                                 # PostgreSQL connections per process


@dataclass
class DirectoryConfig:
    type: str = "store"                 # "store" reads meetups from our own DB, "rest" from the CRUD service
    base_url: str = ""
    auth_type: str = "bearer"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=lambda: {
        "get_meetup": "/meetups/{meetup_id}",
        "get_user": "/users/{user_id}",
    })


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "notification-workers"
    consumer_concurrency: int = 1       # one job at a time per worker
    delayed_promote_interval: int = 5   # seconds between delayed-queue scans
    retry_backoff_base: int = 60        # base seconds for exponential retry backoff
    max_attempts: int = 3               # deliveries before a job is dead-lettered
    enqueue_attempts: int = 3           # publish attempts before EnqueueError
    claim_idle_seconds: int = 60        # unacked Redis entries older than this are reclaimed


@dataclass
class MailConfig:
    transport: str = "log"              # "smtp" | "log"
    host: str = "localhost"
    port: int = 587
    username: str = ""
    password: str = ""
    use_tls: bool = False
    start_tls: bool = True
    timeout: float = 30.0
    from_email: str = "noreply@meetapp.com"
    from_name: str = "Meetapp"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "Meetapp"
    debug: bool = False
    timezone: str = "America/Sao_Paulo"
    default_locale: str = "pt"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    directory: DirectoryConfig = field(default_factory=DirectoryConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    mail: MailConfig = field(default_factory=MailConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} and ${VAR_NAME:-default} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)(?::-([^}]*))?\}')
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        if default is None:
            default = match.group(0)
        return os.environ.get(var_name, default)
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _merge(section: Any, raw: dict[str, Any]) -> Any:
    """Return a copy of a config dataclass with known keys overridden from raw."""
    values = {
        k: raw[k] for k in section.__dataclass_fields__ if k in raw
    }
    return type(section)(**{**section.__dict__, **values})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "MEETAPP_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)
        settings.default_locale = raw.get("default_locale", settings.default_locale)

        if "database" in raw:
            settings.database = _merge(settings.database, raw["database"])

        if "directory" in raw:
            settings.directory = _merge(settings.directory, raw["directory"])

        if "queue" in raw:
            settings.queue = _merge(settings.queue, raw["queue"])

        if "mail" in raw:
            settings.mail = _merge(settings.mail, raw["mail"])

        if "logging" in raw:
            settings.logging = _merge(settings.logging, raw["logging"])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
