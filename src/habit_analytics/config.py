"""Configuration management using pydantic-settings."""

import threading

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Valid log levels
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class DatabaseSettings(BaseSettings):
    """Relational store settings."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    path: str = Field(default="/data/habits.db", description="SQLite database path")
    timeout_seconds: float = Field(default=5.0, description="Connection busy timeout")
    max_retries: int = Field(default=3, description="Attempts for locked-database errors")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate path is not empty."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """Validate at least one attempt is made."""
        if v < 1:
            raise ValueError(f"Max retries must be at least 1, got {v}")
        return v


class AnalyticsSettings(BaseSettings):
    """Thresholds and windows used by the habit-analytics engine."""

    model_config = SettingsConfigDict(env_prefix="ANALYTICS_")

    correlation_lookback_days: int = Field(
        default=30, description="Days of habit/biometric history joined for alerts"
    )
    stale_habit_days: int = Field(
        default=3, description="Days without an entry before a habit is recommended"
    )
    stress_alert_threshold: float = Field(
        default=70.0, description="Average stress above which an alert is raised"
    )
    hrv_alert_threshold: float = Field(
        default=30.0, description="Average HRV below which an alert is raised"
    )
    critical_stress: float = Field(default=80.0, description="Stress above this is critical")
    warning_stress: float = Field(default=60.0, description="Stress above this is a warning")
    weekly_window_days: int = Field(default=7, description="Window of the daily summary pass")
    low_consistency_threshold: int = Field(
        default=50, description="Consistency below this raises a missing-habits alert"
    )
    summary_days: int = Field(default=30, description="Default window for summaries")
    trend_improving_ratio: float = Field(default=1.1, description="Improving if above ratio")
    trend_declining_ratio: float = Field(default=0.9, description="Declining if below ratio")
    streak_requires_today: bool = Field(
        default=False, description="Only count a streak whose run includes today"
    )
    daily_correlation_check: bool = Field(
        default=True, description="Re-run the correlation check for every user in the daily pass"
    )

    @field_validator(
        "correlation_lookback_days",
        "stale_habit_days",
        "weekly_window_days",
        "summary_days",
    )
    @classmethod
    def validate_days(cls, v: int) -> int:
        """Validate windows are positive."""
        if v < 1:
            raise ValueError(f"Day windows must be at least 1, got {v}")
        return v

    @field_validator("low_consistency_threshold")
    @classmethod
    def validate_consistency(cls, v: int) -> int:
        """Validate consistency threshold is a percentage."""
        if not 0 <= v <= 100:
            raise ValueError(f"Consistency threshold must be between 0 and 100, got {v}")
        return v

    @field_validator("trend_improving_ratio")
    @classmethod
    def validate_improving_ratio(cls, v: float) -> float:
        """Validate improving ratio is at least 1."""
        if v < 1.0:
            raise ValueError(f"Improving ratio must be at least 1.0, got {v}")
        return v

    @field_validator("trend_declining_ratio")
    @classmethod
    def validate_declining_ratio(cls, v: float) -> float:
        """Validate declining ratio is within (0, 1]."""
        if not 0.0 < v <= 1.0:
            raise ValueError(f"Declining ratio must be in (0, 1], got {v}")
        return v


class SchedulerSettings(BaseSettings):
    """Daily analysis scheduler settings."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    enabled: bool = Field(default=True, description="Run the daily analysis pass")
    run_hour: int = Field(default=10, description="Local hour of the daily pass")
    run_minute: int = Field(default=0, description="Minute of the daily pass")
    max_concurrent_users: int = Field(
        default=1, description="Users analyzed concurrently during the daily pass"
    )

    @field_validator("run_hour")
    @classmethod
    def validate_run_hour(cls, v: int) -> int:
        """Validate hour is in valid range."""
        if not 0 <= v <= 23:
            raise ValueError(f"Run hour must be between 0 and 23, got {v}")
        return v

    @field_validator("run_minute")
    @classmethod
    def validate_run_minute(cls, v: int) -> int:
        """Validate minute is in valid range."""
        if not 0 <= v <= 59:
            raise ValueError(f"Run minute must be between 0 and 59, got {v}")
        return v

    @field_validator("max_concurrent_users")
    @classmethod
    def validate_max_concurrent_users(cls, v: int) -> int:
        """Validate concurrency is positive."""
        if v < 1:
            raise ValueError(f"Max concurrent users must be at least 1, got {v}")
        return v


class EventSettings(BaseSettings):
    """Outbound event queue settings."""

    model_config = SettingsConfigDict(env_prefix="EVENTS_")

    queue_size: int = Field(default=1000, description="Maximum queued events")
    workers: int = Field(default=2, description="Delivery worker tasks")
    webhook_url: str | None = Field(default=None, description="Webhook receiving events")
    webhook_token: str | None = Field(default=None, description="Bearer token for the webhook")
    timeout_seconds: float = Field(default=10.0, description="Webhook request timeout")
    max_retries: int = Field(default=3, description="Delivery attempts per event")
    retry_delay_seconds: float = Field(default=1.0, description="Initial retry backoff")

    @field_validator("queue_size")
    @classmethod
    def validate_queue_size(cls, v: int) -> int:
        """Validate queue size is reasonable."""
        if v < 1:
            raise ValueError(f"Queue size must be at least 1, got {v}")
        if v > 100_000:
            raise ValueError(f"Queue size too large (max 100000), got {v}")
        return v

    @field_validator("workers", "max_retries")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate counts are positive."""
        if v < 1:
            raise ValueError(f"Value must be at least 1, got {v}")
        return v


class DLQSettings(BaseSettings):
    """Dead-letter queue settings for undeliverable events."""

    model_config = SettingsConfigDict(env_prefix="DLQ_")

    enabled: bool = Field(default=True, description="Keep failed deliveries")
    db_path: str = Field(default="/data/dlq/events.db", description="DLQ database path")
    max_entries: int = Field(default=10_000, description="Entries kept before eviction")
    retention_days: int = Field(default=30, description="Days entries are kept")
    max_retries: int = Field(default=3, description="Replay attempts per entry")


class TracingSettings(BaseSettings):
    """OpenTelemetry tracing settings."""

    model_config = SettingsConfigDict(env_prefix="TRACING_")

    enabled: bool = Field(default=False, description="Export traces over OTLP")
    service_name: str = Field(default="habit-analytics", description="Reported service name")


class AppSettings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_prefix="APP_")

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or console")
    prometheus_port: int = Field(default=9090, description="Prometheus metrics port")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        normalized = v.upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log level '{v}'. Must be one of: {', '.join(VALID_LOG_LEVELS)}"
            )
        return normalized

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        normalized = v.lower()
        if normalized not in ("json", "console"):
            raise ValueError(f"Invalid log format '{v}'. Must be 'json' or 'console'")
        return normalized

    @field_validator("prometheus_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError(f"Port must be between 1 and 65535, got {v}")
        return v


class Settings(BaseSettings):
    """Combined application settings."""

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    analytics: AnalyticsSettings = Field(default_factory=AnalyticsSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    events: EventSettings = Field(default_factory=EventSettings)
    dlq: DLQSettings = Field(default_factory=DLQSettings)
    tracing: TracingSettings = Field(default_factory=TracingSettings)
    app: AppSettings = Field(default_factory=AppSettings)

    @classmethod
    def load(cls) -> "Settings":
        """Load settings from environment variables."""
        return cls(
            database=DatabaseSettings(),
            analytics=AnalyticsSettings(),
            scheduler=SchedulerSettings(),
            events=EventSettings(),
            dlq=DLQSettings(),
            tracing=TracingSettings(),
            app=AppSettings(),
        )


# Global settings instance with thread-safe initialization
_settings: Settings | None = None
_settings_lock = threading.Lock()


def get_settings() -> Settings:
    """Get or create the global settings instance.

    Thread-safe singleton pattern using double-checked locking.
    """
    global _settings
    if _settings is None:
        with _settings_lock:
            # Double-check after acquiring lock
            if _settings is None:
                _settings = Settings.load()
    return _settings
