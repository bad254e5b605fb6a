"""Resilience helpers."""

from dm_gateway.components.resilience.retry import (
    RetryConfig,
    calculate_delay_with_jitter,
    should_retry,
)

__all__ = ["RetryConfig", "calculate_delay_with_jitter", "should_retry"]
