"""
Constants and enums for the widget integration core.

This module centralizes the magic strings and numeric defaults used by the
cache, the poll scheduler and the reaper.
"""

from enum import Enum


class QueueName(str, Enum):
    """Standard queue names used by the integration core."""

    METRICS = "metrics-queue"
    LOGS = "logs-queue"
    INTEGRATION_UPDATES = "integration-updates-queue"


class IntegrationMode(str, Enum):
    """How an integration receives data."""

    PULL = "pull"
    PUSH = "push"
    BOTH = "both"

    @property
    def includes_pull(self) -> bool:
        return self in (IntegrationMode.PULL, IntegrationMode.BOTH)

    @property
    def includes_push(self) -> bool:
        return self in (IntegrationMode.PUSH, IntegrationMode.BOTH)


class CredentialScope(str, Enum):
    """Owner of an integration credential record."""

    ORGANIZATION = "organization"
    WIDGET = "widget"


class SharingPolicy(str, Enum):
    """Which widget instances share one cache line."""

    ORGANIZATION = "organization"
    WIDGET_OPTION = "widget_option"
    WIDGET_CONFIG = "widget_config"


class EntryStatus(str, Enum):
    """Status of a cached integration data entry."""

    OK = "ok"
    ERROR = "error"
    PENDING = "pending"


class PollState(str, Enum):
    """Poll scheduler state for one (integration, discriminator) key."""

    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"


class PollTrigger(str, Enum):
    """Why a poll job was enqueued."""

    TIMER = "timer"
    ON_DEMAND = "on_demand"
    ADMIN = "admin"
    BOOTSTRAP = "bootstrap"


class OperationStatus(str, Enum):
    """Status values for operations."""

    SUCCESS = "success"
    ERROR = "error"


class LogLevel(str, Enum):
    """Standard logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class EnvironmentVariable(str, Enum):
    """Standard environment variable names."""

    AZURE_STORAGE_CONNECTION = "AzureWebJobsStorage"
    DATABASE_URL = "DATABASE_URL"
    APP_ENV = "APP_ENV"
    LOG_LEVEL = "LOG_LEVEL"
    DEBUG = "DEBUG"
    ENABLE_LOGS_QUEUE = "ENABLE_LOGS_QUEUE"
    ENABLE_METRICS = "ENABLE_METRICS"
    FETCH_TIMEOUT_SECONDS = "INTEGRATION_FETCH_TIMEOUT_SECONDS"
    LOCK_TIMEOUT_SECONDS = "INTEGRATION_LOCK_TIMEOUT_SECONDS"
    RETENTION_DAYS = "INTEGRATION_DATA_RETENTION_DAYS"
    REAPER_INTERVAL_SECONDS = "INTEGRATION_REAPER_INTERVAL_SECONDS"
    POLL_WORKERS = "INTEGRATION_POLL_WORKERS"


# Numeric constants
class Limits:
    """System limits and thresholds."""

    DEFAULT_PULL_INTERVAL_SECONDS = 300
    DEFAULT_RETENTION_DAYS = 30
    MAX_CONSECUTIVE_FAILURES = 5
    MIN_BACKOFF_SECONDS = 5
    MAX_ERROR_MESSAGE_LENGTH = 1000
    RSS_MAX_ITEMS = 100
    DEFAULT_POLL_WORKERS = 4


# Time-related constants (in seconds)
class Timeouts:
    """Timeout values in seconds."""

    FETCH = 30
    RSS_FETCH = 15
    LOCK_WAIT = 60
    SHUTDOWN_GRACE_PERIOD = 30
    REAPER_INTERVAL = 3600
