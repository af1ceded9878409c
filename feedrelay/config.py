"""Configuration management for the feed relay bot."""

import os
from dataclasses import dataclass

LEDGER_BACKENDS = ("sqlite", "dynamodb")


@dataclass
class TelegramConfig:
    """Configuration for Telegram Bot API."""

    bot_token: str
    parse_mode: str | None = None
    retry_attempts: int = 3
    backoff_factor: float = 2.0
    timeout: int = 30


@dataclass
class SchedulerConfig:
    """Configuration for feed polling."""

    poll_interval: int = 60
    fetch_timeout: int = 30


@dataclass
class StorageConfig:
    """Configuration for the registry database and the delivery ledger."""

    database_path: str = "feedrelay.db"
    ledger_backend: str = "sqlite"
    dynamodb_table: str = "feedrelay-deliveries"
    aws_region: str = "us-east-1"
    ledger_ttl_days: int = 0


class Config:
    """Main configuration manager."""

    def __init__(self):
        """Initialize configuration from environment variables."""
        self.bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "")
        self.telegram_secret_name = os.getenv("TELEGRAM_SECRET_NAME", "")
        self.aws_region = os.getenv(
            "CURRENT_AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")
        )
        self.database_path = os.getenv("FEEDRELAY_DB_PATH", "feedrelay.db")
        self.ledger_backend = os.getenv("FEEDRELAY_LEDGER_BACKEND", "sqlite").lower()
        self.dynamodb_table = os.getenv("DYNAMODB_TABLE", "feedrelay-deliveries")
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

        self.poll_interval = _int_env("FEEDRELAY_POLL_INTERVAL", 60, minimum=1)
        self.fetch_timeout = _int_env("FEEDRELAY_FETCH_TIMEOUT", 30, minimum=1)
        self.ledger_ttl_days = _int_env("FEEDRELAY_LEDGER_TTL_DAYS", 0, minimum=0)

        if self.ledger_backend not in LEDGER_BACKENDS:
            raise ValueError(
                f"FEEDRELAY_LEDGER_BACKEND must be one of {', '.join(LEDGER_BACKENDS)}"
            )

    def get_telegram_config(self, bot_token: str | None = None) -> TelegramConfig:
        """Get Telegram configuration."""
        return TelegramConfig(bot_token=bot_token or self.bot_token)

    def get_scheduler_config(self) -> SchedulerConfig:
        """Get scheduler configuration."""
        return SchedulerConfig(
            poll_interval=self.poll_interval, fetch_timeout=self.fetch_timeout
        )

    def get_storage_config(self) -> StorageConfig:
        """Get storage configuration."""
        return StorageConfig(
            database_path=self.database_path,
            ledger_backend=self.ledger_backend,
            dynamodb_table=self.dynamodb_table,
            aws_region=self.aws_region,
            ledger_ttl_days=self.ledger_ttl_days,
        )


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {value}")
    return value
