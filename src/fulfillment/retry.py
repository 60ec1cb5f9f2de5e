"""
Redelivery backoff for the event bus.

A failed delivery is retried up to ``RetryConfig.max_attempts`` times with
exponentially growing, jittered delays before the envelope is dead-lettered.
``max_redelivery_window`` bounds how long that can take, which sizes the
retention of processed-event markers.
"""

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryConfig:
    """
    Redelivery policy for one consumer group delivery.

    Attributes:
        max_attempts: Deliveries before dead-lettering, the first included
        initial_delay: Seconds before the first redelivery
        max_delay: Cap on any single delay, in seconds
        exponential_base: Growth factor between consecutive delays
        jitter: Fraction of each delay randomized in both directions (0-1)

    Example:
        >>> RetryConfig(max_attempts=5, initial_delay=0.5, max_delay=10.0)
    """

    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(
                f"max_attempts must be >= 1, got {self.max_attempts}. "
                "1 dead-letters on the first failure."
            )
        if self.initial_delay <= 0 or self.max_delay <= 0:
            raise ValueError(
                f"Delays must be positive, got initial_delay={self.initial_delay}, "
                f"max_delay={self.max_delay}."
            )
        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})."
            )
        if self.exponential_base <= 1.0:
            raise ValueError(f"exponential_base must be > 1.0, got {self.exponential_base}.")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be between 0.0 and 1.0, got {self.jitter}.")

    def base_delay(self, retry: int) -> float:
        """Delay before redelivery ``retry`` (0-based) without jitter."""
        return min(self.initial_delay * self.exponential_base**retry, self.max_delay)


def calculate_backoff(retry: int, config: RetryConfig) -> float:
    """
    Jittered delay before redelivery ``retry`` (0-based).

    Example:
        >>> config = RetryConfig(initial_delay=1.0, max_delay=30.0, jitter=0.0)
        >>> calculate_backoff(0, config), calculate_backoff(10, config)
        (1.0, 30.0)
    """
    delay = config.base_delay(retry)
    spread = delay * config.jitter
    return max(0.0, delay + random.uniform(-spread, spread))  # nosec B311 - not crypto


def max_redelivery_window(config: RetryConfig) -> float:
    """
    Longest time, in seconds, an envelope can spend between first delivery
    and dead-lettering (handler run time excluded).

    Processed-event markers must be retained longer than this.
    """
    return sum(
        config.base_delay(retry) * (1 + config.jitter) for retry in range(config.max_attempts - 1)
    )


__all__ = [
    "RetryConfig",
    "calculate_backoff",
    "max_redelivery_window",
]
