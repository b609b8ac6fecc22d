"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Secure defaults (no provider credentials in code)
"""

import os
from functools import lru_cache
from typing import Literal, cast
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from core.domain.models import Channel

# Load environment variables from .env file
load_dotenv()


class SchedulerConfig(BaseModel):
    """Background poll and cleanup task settings."""

    poll_interval_seconds: float = Field(
        default=60.0, gt=0.0, description="Interval between due-reminder polls"
    )
    poll_batch_size: int = Field(default=20, gt=0, description="Max reminders dispatched per poll")
    send_delay_seconds: float = Field(
        default=0.5, ge=0.0, description="Pause between sends inside one poll batch"
    )
    retention_days: int = Field(default=7, gt=0, description="Days terminal reminders are kept")
    cleanup_batch_size: int = Field(default=50, gt=0, description="Reminders deleted per batch")
    cleanup_interval_seconds: float = Field(
        default=86400.0, gt=0.0, description="Interval between cleanup runs"
    )
    cleanup_batch_pause_seconds: float = Field(
        default=1.0, ge=0.0, description="Pause between cleanup batches"
    )


class CacheConfig(BaseModel):
    """TTLs for the process-local caches."""

    ownership_ttl_seconds: float = Field(default=300.0, gt=0.0)
    dedup_ttl_seconds: float = Field(default=120.0, gt=0.0)
    rollup_ttl_seconds: float = Field(default=600.0, gt=0.0)
    sweep_interval_seconds: float = Field(
        default=300.0, gt=0.0, description="Interval between expired-entry sweeps"
    )


class NotificationConfig(BaseModel):
    """Delivery channel settings. Missing credentials disable a provider."""

    channel_timeout_seconds: float = Field(
        default=10.0, gt=0.0, description="Upper bound for a single provider call"
    )
    default_channels: list[Channel] = Field(
        default_factory=lambda: [Channel.PUSH, Channel.SMS],
        description="Channels attached to new reminders",
    )

    fcm_project_id: str | None = Field(None, description="Firebase project id")
    fcm_access_token: str | None = Field(None, description="OAuth2 bearer token for FCM")

    twilio_account_sid: str | None = Field(None, description="Twilio account SID")
    twilio_auth_token: str | None = Field(None, description="Twilio auth token")
    twilio_from_number: str | None = Field(None, description="Sender phone number")

    @field_validator("twilio_account_sid")
    def validate_account_sid(cls, v):
        if v and not v.startswith("AC"):
            raise ValueError("Twilio account SID must start with 'AC'")
        return v

    @property
    def push_enabled(self) -> bool:
        return bool(self.fcm_project_id and self.fcm_access_token)

    @property
    def sms_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)


class RulesConfig(BaseModel):
    """Rule table and calendar settings."""

    rules_file: str | None = Field(None, description="Optional JSON file overriding default rules")
    timezone: str = Field(default="UTC", description="IANA timezone for calendar-day windows")
    reminder_lookahead_days: int = Field(default=2, gt=0, le=14)

    @field_validator("timezone")
    def validate_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class DatabaseConfig(BaseModel):
    """Document store configuration."""

    backend: Literal["memory", "mongo"] = Field(default="memory", description="Store backend")
    url: str = Field(default="mongodb://localhost:27017", description="Database URL")
    name: str = Field(default="carewatch", description="Database name")
    timeout_ms: int = Field(default=5000, gt=0, description="Server selection timeout")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    rules: RulesConfig = Field(default_factory=RulesConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
    v = val.strip().lower()
    if v in {"dev", "development"}:
        return "development"
    if v in {"stage", "staging"}:
        return "staging"
    return "production"


def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
    v = val.strip().upper()
    return cast(
        Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
    )


def _parse_bool(val: str | None, default: bool) -> bool:
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "on"}


def _parse_channels(val: str | None) -> list[Channel]:
    if not val:
        return [Channel.PUSH, Channel.SMS]
    return [Channel(part.strip().lower()) for part in val.split(",") if part.strip()]


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    # Detect environment
    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = _parse_bool(os.getenv("DEBUG"), environment == "development")

    scheduler_config = SchedulerConfig(
        poll_interval_seconds=float(os.getenv("POLL_INTERVAL_SECONDS", "60")),
        poll_batch_size=int(os.getenv("POLL_BATCH_SIZE", "20")),
        send_delay_seconds=float(os.getenv("SEND_DELAY_SECONDS", "0.5")),
        retention_days=int(os.getenv("RETENTION_DAYS", "7")),
        cleanup_batch_size=int(os.getenv("CLEANUP_BATCH_SIZE", "50")),
        cleanup_interval_seconds=float(os.getenv("CLEANUP_INTERVAL_SECONDS", "86400")),
    )

    cache_config = CacheConfig(
        ownership_ttl_seconds=float(os.getenv("OWNERSHIP_CACHE_TTL_SECONDS", "300")),
        dedup_ttl_seconds=float(os.getenv("DEDUP_CACHE_TTL_SECONDS", "120")),
        rollup_ttl_seconds=float(os.getenv("ROLLUP_CACHE_TTL_SECONDS", "600")),
    )

    notification_config = NotificationConfig(
        channel_timeout_seconds=float(os.getenv("CHANNEL_TIMEOUT_SECONDS", "10")),
        default_channels=_parse_channels(os.getenv("DEFAULT_CHANNELS")),
        fcm_project_id=os.getenv("FCM_PROJECT_ID") or None,
        fcm_access_token=os.getenv("FCM_ACCESS_TOKEN") or None,
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID") or None,
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN") or None,
        twilio_from_number=os.getenv("TWILIO_PHONE_NUMBER") or None,
    )

    rules_config = RulesConfig(
        rules_file=os.getenv("RULES_FILE") or None,
        timezone=os.getenv("MONITOR_TIMEZONE", "UTC"),
        reminder_lookahead_days=int(os.getenv("REMINDER_LOOKAHEAD_DAYS", "2")),
    )

    database_config = DatabaseConfig(
        backend="mongo" if os.getenv("DATABASE_BACKEND", "memory").lower() == "mongo" else "memory",
        url=os.getenv("MONGO_URL", "mongodb://localhost:27017"),
        name=os.getenv("DB_NAME", "carewatch"),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    # Application config
    return AppConfig(
        environment=environment,
        debug=debug,
        scheduler=scheduler_config,
        cache=cache_config,
        notifications=notification_config,
        rules=rules_config,
        database=database_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


# Development helpers
def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\n🔧 CONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")
    print(f"Store Backend: {config.database.backend}")

    print("\n⏱️ SCHEDULER CONFIGURATION")
    print(f"Poll Interval: {config.scheduler.poll_interval_seconds}s")
    print(f"Poll Batch Size: {config.scheduler.poll_batch_size}")
    print(f"Retention: {config.scheduler.retention_days} days")

    print("\n📣 NOTIFICATION CONFIGURATION")
    print(f"Push (FCM): {'enabled' if config.notifications.push_enabled else 'disabled'}")
    print(f"SMS (Twilio): {'enabled' if config.notifications.sms_enabled else 'disabled'}")
    print(f"Channel Timeout: {config.notifications.channel_timeout_seconds}s")


if __name__ == "__main__":
    print_config_summary()
