"""
Configuration loading and validation.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/smartcapital.db"


@dataclass
class MarketDataConfig:
    """Market data gateway configuration."""

    timeout_seconds: float = 10.0
    max_workers: int = 5
    max_retries: int = 2
    retry_delay_seconds: float = 1.0


@dataclass
class ScheduleConfig:
    """Schedule configuration."""

    timezone: str = "Asia/Taipei"
    alert_check_minutes: int = 5
    digest_hour: int = 9
    digest_minute: int = 0


@dataclass
class LineConfig:
    """LINE Messaging API settings."""

    channel_access_token: str = ""
    push_url: str = "https://api.line.me/v2/bot/message/push"


@dataclass
class WebConfig:
    """Links sent back to chat users."""

    web_url: str = "http://localhost:3001"


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    market_data: MarketDataConfig = field(default_factory=MarketDataConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    line: LineConfig = field(default_factory=LineConfig)
    app: WebConfig = field(default_factory=WebConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path")
    if not db_path:
        raise ConfigValidationError("Database path is required")

    if db_path != ":memory:":
        parent = Path(db_path).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            raise ConfigValidationError(f"Database path not writable: {parent}")

    schedule = config_dict.get("schedule") or {}
    if not schedule.get("timezone", "Asia/Taipei"):
        raise ConfigValidationError("Timezone cannot be empty")

    minutes = schedule.get("alert_check_minutes", 5)
    if not isinstance(minutes, int) or minutes < 1:
        raise ConfigValidationError(
            f"alert_check_minutes must be a positive integer, got {minutes!r}"
        )

    hour = schedule.get("digest_hour", 9)
    if not isinstance(hour, int) or not 0 <= hour <= 23:
        raise ConfigValidationError(f"digest_hour must be 0-23, got {hour!r}")

    minute = schedule.get("digest_minute", 0)
    if not isinstance(minute, int) or not 0 <= minute <= 59:
        raise ConfigValidationError(f"digest_minute must be 0-59, got {minute!r}")

    market = config_dict.get("market_data") or {}
    timeout = market.get("timeout_seconds", 10.0)
    if not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigValidationError(
            f"market_data.timeout_seconds must be positive, got {timeout!r}"
        )

    workers = market.get("max_workers", 5)
    if not isinstance(workers, int) or workers < 1:
        raise ConfigValidationError(
            f"market_data.max_workers must be a positive integer, got {workers!r}"
        )

    retries = market.get("max_retries", 2)
    if not isinstance(retries, int) or retries < 0:
        raise ConfigValidationError(
            f"market_data.max_retries must be a non-negative integer, got {retries!r}"
        )

    delay = market.get("retry_delay_seconds", 1.0)
    if not isinstance(delay, (int, float)) or delay < 0:
        raise ConfigValidationError(
            f"market_data.retry_delay_seconds must not be negative, got {delay!r}"
        )


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    config_dict = _substitute_env_vars(raw_config)
    config_dict.setdefault("database", {"path": DatabaseConfig.path})

    _validate_config(config_dict)

    try:
        return AppConfig(
            database=DatabaseConfig(**(config_dict.get("database") or {})),
            market_data=MarketDataConfig(**(config_dict.get("market_data") or {})),
            schedule=ScheduleConfig(**(config_dict.get("schedule") or {})),
            line=LineConfig(**(config_dict.get("line") or {})),
            app=WebConfig(**(config_dict.get("app") or {})),
            advanced=AdvancedConfig(**(config_dict.get("advanced") or {})),
        )
    except TypeError as e:
        raise ConfigValidationError(f"Unknown configuration key: {e}") from e
