"""
Configuration for the fulfillment saga.

This module provides:
- SagaConfig: Timeouts, reservation TTL, sweep interval, marker retention
  and the bus retry policy, with environment variable overrides
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import timedelta

from fulfillment.retry import RetryConfig, max_redelivery_window

DEFAULT_ENV_PREFIX = "FULFILLMENT_"


@dataclass(frozen=True)
class SagaConfig:
    """
    Configuration shared by the bus, stores, managers and coordinators.

    Attributes:
        reservation_ttl: How long an inventory hold is honorable
        sweep_interval: Seconds between background expiry sweeps
        db_timeout: Bound, in seconds, for reservation and store operations
        gateway_timeout: Bound, in seconds, for payment gateway calls
        handler_timeout: Bound, in seconds, for one handler delivery attempt
        processed_marker_retention: How long processed-event markers are kept;
            must outlive the bus's maximum redelivery window
        retry: Redelivery policy for failing handlers

    Example:
        >>> config = SagaConfig(
        ...     reservation_ttl=timedelta(minutes=5),
        ...     retry=RetryConfig(max_attempts=3),
        ... )
        >>>
        >>> # Environment driven
        >>> config = SagaConfig.from_env()
    """

    reservation_ttl: timedelta = timedelta(minutes=15)
    sweep_interval: float = 60.0
    db_timeout: float = 10.0
    gateway_timeout: float = 30.0
    handler_timeout: float = 30.0
    processed_marker_retention: timedelta = timedelta(days=7)
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.reservation_ttl <= timedelta(0):
            raise ValueError(
                f"reservation_ttl must be positive, got {self.reservation_ttl}. "
                "Use a value like 15 minutes (default)."
            )

        for name in ("sweep_interval", "db_timeout", "gateway_timeout", "handler_timeout"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}.")

        window = max_redelivery_window(self.retry) + self.handler_timeout * self.retry.max_attempts
        if self.processed_marker_retention.total_seconds() <= window:
            raise ValueError(
                f"processed_marker_retention ({self.processed_marker_retention}) must outlive "
                f"the maximum redelivery window ({window:.1f}s), otherwise redelivered events "
                "could be processed twice."
            )

    @classmethod
    def from_env(
        cls,
        prefix: str = DEFAULT_ENV_PREFIX,
        environ: Mapping[str, str] | None = None,
    ) -> SagaConfig:
        """
        Build a configuration from environment variables.

        Recognized variables (shown with the default prefix):
            FULFILLMENT_RESERVATION_TTL_SECONDS
            FULFILLMENT_SWEEP_INTERVAL_SECONDS
            FULFILLMENT_DB_TIMEOUT_SECONDS
            FULFILLMENT_GATEWAY_TIMEOUT_SECONDS
            FULFILLMENT_HANDLER_TIMEOUT_SECONDS
            FULFILLMENT_MARKER_RETENTION_SECONDS
            FULFILLMENT_RETRY_MAX_ATTEMPTS
            FULFILLMENT_RETRY_INITIAL_DELAY_SECONDS
            FULFILLMENT_RETRY_MAX_DELAY_SECONDS

        Args:
            prefix: Variable name prefix
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            SagaConfig with overrides applied to the defaults

        Raises:
            ValueError: If a variable cannot be parsed or fails validation
        """
        env = os.environ if environ is None else environ

        def _float(name: str) -> float | None:
            raw = env.get(f"{prefix}{name}")
            if raw is None or raw == "":
                return None
            try:
                return float(raw)
            except ValueError:
                raise ValueError(f"{prefix}{name} must be a number, got {raw!r}") from None

        def _int(name: str) -> int | None:
            raw = env.get(f"{prefix}{name}")
            if raw is None or raw == "":
                return None
            try:
                return int(raw)
            except ValueError:
                raise ValueError(f"{prefix}{name} must be an integer, got {raw!r}") from None

        retry = RetryConfig()
        retry_overrides: dict[str, float | int] = {}
        if (attempts := _int("RETRY_MAX_ATTEMPTS")) is not None:
            retry_overrides["max_attempts"] = attempts
        if (initial := _float("RETRY_INITIAL_DELAY_SECONDS")) is not None:
            retry_overrides["initial_delay"] = initial
        if (cap := _float("RETRY_MAX_DELAY_SECONDS")) is not None:
            retry_overrides["max_delay"] = cap
        if retry_overrides:
            retry = replace(retry, **retry_overrides)

        config = cls(retry=retry)
        overrides: dict[str, object] = {}
        if (ttl := _float("RESERVATION_TTL_SECONDS")) is not None:
            overrides["reservation_ttl"] = timedelta(seconds=ttl)
        if (sweep := _float("SWEEP_INTERVAL_SECONDS")) is not None:
            overrides["sweep_interval"] = sweep
        if (db := _float("DB_TIMEOUT_SECONDS")) is not None:
            overrides["db_timeout"] = db
        if (gateway := _float("GATEWAY_TIMEOUT_SECONDS")) is not None:
            overrides["gateway_timeout"] = gateway
        if (handler := _float("HANDLER_TIMEOUT_SECONDS")) is not None:
            overrides["handler_timeout"] = handler
        if (retention := _float("MARKER_RETENTION_SECONDS")) is not None:
            overrides["processed_marker_retention"] = timedelta(seconds=retention)

        return replace(config, **overrides) if overrides else config


__all__ = ["SagaConfig", "DEFAULT_ENV_PREFIX"]
