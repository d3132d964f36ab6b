"""
Centralized configuration management for the widget integration core.

This module provides a unified configuration system with support for:
- Environment variables
- Feature flags
- Cache, scheduler and reaper tuning
- Validation using Pydantic
"""

import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import EnvironmentVariable, Limits, LogLevel, QueueName, Timeouts


def _env_flag(name: EnvironmentVariable, default: str = "false") -> bool:
    return os.getenv(name.value, default).lower() == "true"


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    connection_string: str = Field(
        default_factory=lambda: os.getenv(
            EnvironmentVariable.DATABASE_URL.value, "sqlite:///./widget_integrations.db"
        ),
        description="Database connection string",
    )
    pool_size: int = Field(default=5, description="Connection pool size")
    max_overflow: int = Field(default=10, description="Maximum overflow connections")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    echo: bool = Field(default=False, description="Echo SQL statements")


class QueueConfig(BaseModel):
    """Queue configuration for Azure Storage Queues."""

    connection_string: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.AZURE_STORAGE_CONNECTION.value, ""),
        description="Azure Storage connection string",
    )
    metrics_queue_name: str = Field(default=QueueName.METRICS.value, description="Metrics queue")
    logs_queue_name: str = Field(default=QueueName.LOGS.value, description="Logs queue")
    updates_queue_name: str = Field(
        default=QueueName.INTEGRATION_UPDATES.value,
        description="Queue receiving integration data update notifications",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.LOG_LEVEL.value, LogLevel.INFO.value),
        description="Logging level",
    )

    @field_validator("level")
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {level.value for level in LogLevel}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class FeatureFlags(BaseModel):
    """Feature flags for controlling runtime behavior."""

    enable_metrics: bool = Field(
        default_factory=lambda: _env_flag(EnvironmentVariable.ENABLE_METRICS),
        description="Send operation metrics to the metrics queue",
    )
    enable_logs_queue: bool = Field(
        default_factory=lambda: _env_flag(EnvironmentVariable.ENABLE_LOGS_QUEUE),
        description="Ship log records to the logs queue",
    )
    enable_update_notifications_queue: bool = Field(
        default=False, description="Publish data update events to the updates queue"
    )


class CacheConfig(BaseModel):
    """Tuning for the integration data cache."""

    fetch_timeout_seconds: float = Field(
        default_factory=lambda: float(
            os.getenv(EnvironmentVariable.FETCH_TIMEOUT_SECONDS.value, Timeouts.FETCH)
        ),
        description="Upper bound on a single fetch",
    )
    lock_timeout_seconds: float = Field(
        default_factory=lambda: float(
            os.getenv(EnvironmentVariable.LOCK_TIMEOUT_SECONDS.value, Timeouts.LOCK_WAIT)
        ),
        description="How long a waiter blocks on an in-flight fetch before serving stale data",
    )
    backoff_base_fraction: float = Field(
        default=0.25, description="First retry delay as a fraction of the pull interval"
    )
    backoff_max_fraction: float = Field(
        default=0.5, description="Longest retry delay as a fraction of the pull interval"
    )
    min_backoff_seconds: float = Field(
        default=Limits.MIN_BACKOFF_SECONDS, description="Floor for any retry delay"
    )
    max_consecutive_failures: int = Field(
        default=Limits.MAX_CONSECUTIVE_FAILURES,
        description="Failures retried on backoff before falling back to the normal interval",
    )

    @field_validator("fetch_timeout_seconds", "lock_timeout_seconds", "min_backoff_seconds")
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @model_validator(mode="after")
    def validate_backoff_fractions(self) -> "CacheConfig":
        if not 0 < self.backoff_base_fraction <= self.backoff_max_fraction < 1:
            raise ValueError("backoff fractions must satisfy 0 < base <= max < 1")
        return self


class SchedulerConfig(BaseModel):
    """Poll scheduler configuration."""

    workers: int = Field(
        default_factory=lambda: int(
            os.getenv(EnvironmentVariable.POLL_WORKERS.value, Limits.DEFAULT_POLL_WORKERS)
        ),
        description="Concurrent poll workers",
    )
    shutdown_grace_seconds: float = Field(default=Timeouts.SHUTDOWN_GRACE_PERIOD)


class ReaperConfig(BaseModel):
    """Stale entry reaper configuration."""

    retention_days: int = Field(
        default_factory=lambda: int(
            os.getenv(EnvironmentVariable.RETENTION_DAYS.value, Limits.DEFAULT_RETENTION_DAYS)
        ),
        description="Entries unused for longer than this are eligible for deletion",
    )
    interval_seconds: float = Field(
        default_factory=lambda: float(
            os.getenv(EnvironmentVariable.REAPER_INTERVAL_SECONDS.value, Timeouts.REAPER_INTERVAL)
        ),
        description="Time between sweeps",
    )

    @field_validator("retention_days")
    def validate_retention(cls, v: int) -> int:
        if v < 1:
            raise ValueError("retention_days must be at least 1")
        return v


class AppConfig(BaseModel):
    """Main application configuration."""

    environment: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.APP_ENV.value, "development"),
        description="Application environment",
    )
    debug: bool = Field(
        default_factory=lambda: _env_flag(EnvironmentVariable.DEBUG),
        description="Debug mode",
    )

    # Sub-configurations
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    reaper: ReaperConfig = Field(default_factory=ReaperConfig)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create configuration from environment variables."""
        return cls()


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def set_config(config: AppConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance."""
    global _config
    _config = None
