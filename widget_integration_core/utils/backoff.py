"""
Refresh backoff after failed fetches.

A failed entry is retried sooner than a healthy one would be refreshed: the
delay starts at a fraction of the pull interval and doubles per consecutive
failure, but always stays strictly below the interval. Once the failure
budget is spent the entry falls back to the normal interval.
"""

import random
from typing import Optional

from ..config import CacheConfig, get_config


def calculate_exponential_backoff(
    retry_count: int,
    base_delay: float,
    max_delay: float,
    multiplier: float = 2.0,
    jitter: bool = False,
) -> float:
    """
    Calculate exponential backoff delay.

    Args:
        retry_count: Current retry attempt (0-based)
        base_delay: Delay for the first retry in seconds
        max_delay: Upper bound in seconds
        multiplier: Exponential multiplier
        jitter: Add up to -25% randomization to spread retries of shared keys

    Returns:
        Delay in seconds, never above max_delay
    """
    if retry_count < 0:
        return min(base_delay, max_delay)

    delay = min(base_delay * (multiplier**retry_count), max_delay)

    if jitter:
        # Only shorten, so the cap still holds
        delay -= random.uniform(0, delay * 0.25)

    return delay


def calculate_refresh_backoff(
    interval_seconds: int,
    consecutive_failures: int,
    cache_config: Optional[CacheConfig] = None,
    jitter: bool = False,
) -> float:
    """
    Seconds until the next refresh attempt of an entry whose last fetch failed.

    Args:
        interval_seconds: Normal pull interval of the integration
        consecutive_failures: Failures in a row, including the one just recorded
        cache_config: Backoff tuning (defaults to the global config)
        jitter: Randomize within the allowed window

    Returns:
        A delay strictly less than interval_seconds while the failure budget
        lasts, the interval itself afterwards.
    """
    cache_config = cache_config or get_config().cache

    if consecutive_failures > cache_config.max_consecutive_failures:
        return float(interval_seconds)

    base_delay = max(interval_seconds * cache_config.backoff_base_fraction, cache_config.min_backoff_seconds)
    max_delay = interval_seconds * cache_config.backoff_max_fraction
    if base_delay > max_delay:
        # Short intervals: the floor would reach the interval
        base_delay = max_delay

    return calculate_exponential_backoff(
        max(consecutive_failures - 1, 0), base_delay, max_delay, jitter=jitter
    )
