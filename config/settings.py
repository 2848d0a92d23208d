"""
Configuration loader for the outbound message queue.
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
    url: str = "sqlite:///./omsd.db"          # postgresql:// | mysql:// | sqlite://
    store_backend: str = "sql"                # "sql" | "memory"


@dataclass
class QueueConfig:
    default_max_attempts: int = 3
    default_priority: int = 5
    throttle_window_minutes: int = 20   # per-recipient anti-spam horizon
    throttle_max_sent: int = 3          # sends allowed inside the horizon
    batch_size: int = 50                # messages claimed per dispatcher tick
    tick_interval_seconds: float = 5.0
    send_delay_seconds: float = 1.0     # pacing between gateway calls, 0 disables
    claim_lease_seconds: int = 120      # renewed per message; must outlast one gateway call
    calendar_cache_ttl_seconds: float = 5.0
    stats_window_hours: int = 24


@dataclass
class GatewayConfig:
    provider: str = "mock"              # "twilio" | "mock"
    timeout_seconds: float = 15.0
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class BroadcastConfig:
    enabled: bool = True
    interval_seconds: int = 60
    claim_stale_seconds: int = 600      # a fan-out claim older than this may be resumed
    claim_refresh_every: int = 50       # recipients enqueued between claim refreshes


@dataclass
class Settings:
    app_name: str = "CampusNotifier"
    debug: bool = False
    timezone: str = "UTC"               # zone the time_windows table is written in
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
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


def _section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a YAML mapping, ignoring unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "OMSD_CONFIG",
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

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"])
        if "queue" in raw:
            settings.queue = _section(QueueConfig, raw["queue"])
        if "gateway" in raw:
            settings.gateway = _section(GatewayConfig, raw["gateway"])
        if "broadcast" in raw:
            settings.broadcast = _section(BroadcastConfig, raw["broadcast"])

    # DATABASE_URL wins over the file so containers can inject it
    if os.environ.get("DATABASE_URL"):
        settings.database.url = os.environ["DATABASE_URL"]

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def override_settings(settings: Optional[Settings]) -> None:
    """Install an explicit Settings instance (tests, scripts); None forces a reload."""
    global _settings
    _settings = settings
