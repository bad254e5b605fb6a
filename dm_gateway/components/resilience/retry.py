"""
Reconnect backoff for the Redis event bridge.

Exponential backoff with jitter, so a fleet of gateways that lost Redis at the
same moment does not reconnect in lockstep.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Final

DEFAULT_JITTER_FACTOR: Final[float] = 0.25
DEFAULT_BACKOFF_BASE: Final[float] = 2.0
DEFAULT_INITIAL_DELAY: Final[float] = 1.0


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """
    Backoff parameters.

    Attributes:
        initial_delay: Delay before the first retry, in seconds.
        max_delay: Cap applied before jitter.
        backoff_base: Multiplier per attempt.
        jitter_factor: Jitter range as a fraction of the delay (0.25 = ±25%).
        max_attempts: Consecutive failures tolerated before giving up.
    """

    initial_delay: float = DEFAULT_INITIAL_DELAY
    max_delay: float = 30.0
    backoff_base: float = DEFAULT_BACKOFF_BASE
    jitter_factor: float = DEFAULT_JITTER_FACTOR
    max_attempts: int = 10

    def __post_init__(self) -> None:
        if self.initial_delay <= 0:
            raise ValueError("initial_delay must be positive")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.backoff_base < 1:
            raise ValueError("backoff_base must be >= 1")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be between 0 and 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


def calculate_delay_with_jitter(attempt: int, config: RetryConfig | None = None) -> float:
    """
    Delay before retry number `attempt` (0-indexed).

        min(initial_delay * backoff_base ** attempt, max_delay) * (1 ± jitter_factor)
    """
    if config is None:
        config = RetryConfig()

    capped = min(config.initial_delay * (config.backoff_base ** attempt), config.max_delay)
    jitter_range = capped * config.jitter_factor
    return max(0.0, capped + random.uniform(-jitter_range, jitter_range))


def should_retry(attempt: int, max_attempts: int) -> bool:
    """Whether another attempt is allowed after `attempt` failures."""
    return attempt < max_attempts
