"""
Settings for the Trailing Stop Engine.
Loaded from config/settings.yaml with environment overrides.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from core.logger import get_logger
from core.state import RatchetPolicy

log = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "settings.yaml"

MIN_TRAILING_DISTANCE_BPS = 50


class EngineSettings(BaseModel):
    """Trailing stop engine behavior."""
    min_trailing_distance_bps: int = Field(default=MIN_TRAILING_DISTANCE_BPS, ge=1)
    ratchet_policy: RatchetPolicy = RatchetPolicy.MONOTONIC
    oracle_timeout_seconds: float = Field(default=10.0, gt=0)
    max_price_age_seconds: int = Field(default=0, ge=0)  # 0 disables the check


class ExecutionSettings(BaseModel):
    """Execution gateway behavior."""
    swap_timeout_seconds: float = Field(default=30.0, gt=0)
    gateway_account: str = "gateway"


class SchedulerSettings(BaseModel):
    """Automation scheduler behavior."""
    interval_seconds: float = Field(default=60.0, gt=0)
    max_concurrency: int = Field(default=8, ge=1)
    caller: str = "keeper"


class StorageSettings(BaseModel):
    db_path: str = "storage/trailing_stops.db"
    audit_dir: str = "logs/audit"
    state_file: str = "data/engine_state.json"


class LoggingSettings(BaseModel):
    file: str = "logs/trailing_stop.log"
    json_file: str = ""  # JSON-lines sink, empty disables
    level: str = "INFO"
    rotation: str = "10 MB"
    retention: str = "7 days"


class FeedSettings(BaseModel):
    """Price feed selection: "http" or "exchange"."""
    kind: str = "exchange"
    http_url: str = ""
    exchange_id: str = "binance"
    feed_decimals: int = Field(default=8, ge=0)


class Settings(BaseModel):
    """Complete settings tree."""
    owner: str = "admin"
    engine: EngineSettings = Field(default_factory=EngineSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    feed: FeedSettings = Field(default_factory=FeedSettings)


# Environment variable -> (section, key)
ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "TRAILING_STOP_OWNER": (None, "owner"),
    "TRAILING_STOP_RATCHET_POLICY": ("engine", "ratchet_policy"),
    "TRAILING_STOP_ORACLE_TIMEOUT": ("engine", "oracle_timeout_seconds"),
    "TRAILING_STOP_MAX_PRICE_AGE": ("engine", "max_price_age_seconds"),
    "TRAILING_STOP_SWAP_TIMEOUT": ("execution", "swap_timeout_seconds"),
    "TRAILING_STOP_INTERVAL": ("scheduler", "interval_seconds"),
    "TRAILING_STOP_DB_PATH": ("storage", "db_path"),
    "TRAILING_STOP_LOG_LEVEL": ("logging", "level"),
    "TRAILING_STOP_FEED_URL": ("feed", "http_url"),
}


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value is None or value == "":
            continue
        if section is None:
            raw[key] = value
        else:
            raw.setdefault(section, {})[key] = value
        log.debug(f"[Config] {env_name} overrides {section or 'root'}.{key}")
    return raw


def load_settings(path: str | Path | None = None) -> Settings:
    """
    Load settings from YAML, then apply environment overrides.

    A missing file is not an error: defaults are used.

    Args:
        path: YAML file (defaults to config/settings.yaml)

    Returns:
        Validated Settings
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    raw: dict[str, Any] = {}

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        log.info(f"[Config] Loaded {config_path}")
    else:
        log.warning(f"[Config] {config_path} not found, using defaults")

    return Settings.model_validate(_apply_env_overrides(raw))
