"""
Unit tests for configuration loading and validation.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from widget_integration_core.config import (
    AppConfig,
    CacheConfig,
    LoggingConfig,
    ReaperConfig,
    get_config,
    reset_config,
    set_config,
)
from widget_integration_core.constants import EnvironmentVariable, Limits, Timeouts


class TestCacheConfig:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv(EnvironmentVariable.FETCH_TIMEOUT_SECONDS.value, raising=False)
        monkeypatch.delenv(EnvironmentVariable.LOCK_TIMEOUT_SECONDS.value, raising=False)

        config = CacheConfig()

        assert config.fetch_timeout_seconds == Timeouts.FETCH
        assert config.lock_timeout_seconds == Timeouts.LOCK_WAIT
        assert config.max_consecutive_failures == Limits.MAX_CONSECUTIVE_FAILURES

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv(EnvironmentVariable.FETCH_TIMEOUT_SECONDS.value, "12.5")

        assert CacheConfig().fetch_timeout_seconds == 12.5

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(PydanticValidationError):
            CacheConfig(fetch_timeout_seconds=0)

    @pytest.mark.parametrize("base,maximum", [(0.6, 0.5), (0.0, 0.5), (0.25, 1.0)])
    def test_rejects_invalid_backoff_fractions(self, base, maximum):
        with pytest.raises(PydanticValidationError):
            CacheConfig(backoff_base_fraction=base, backoff_max_fraction=maximum)


class TestReaperConfig:
    def test_reads_retention_from_environment(self, monkeypatch):
        monkeypatch.setenv(EnvironmentVariable.RETENTION_DAYS.value, "7")

        assert ReaperConfig().retention_days == 7

    def test_rejects_zero_retention(self):
        with pytest.raises(PydanticValidationError):
            ReaperConfig(retention_days=0)


class TestLoggingConfig:
    def test_normalizes_level(self):
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_rejects_unknown_level(self):
        with pytest.raises(PydanticValidationError):
            LoggingConfig(level="chatty")


class TestGlobalConfig:
    def test_set_and_reset(self):
        custom = AppConfig(environment="staging")
        set_config(custom)
        assert get_config() is custom

        reset_config()
        assert get_config() is not custom

    def test_feature_flags_from_environment(self, monkeypatch):
        reset_config()
        monkeypatch.setenv(EnvironmentVariable.ENABLE_METRICS.value, "true")

        assert get_config().features.enable_metrics is True
