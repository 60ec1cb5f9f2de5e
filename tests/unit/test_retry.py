"""
Unit tests for the redelivery backoff policy.
"""

import pytest

from fulfillment.retry import RetryConfig, calculate_backoff, max_redelivery_window


class TestRetryConfig:
    """Tests for RetryConfig validation."""

    @pytest.mark.parametrize(
        "kwargs, message",
        [
            ({"max_attempts": 0}, "max_attempts"),
            ({"initial_delay": 0}, "initial_delay"),
            ({"max_delay": 0.5}, "max_delay"),
            ({"exponential_base": 1.0}, "exponential_base"),
            ({"jitter": 1.5}, "jitter"),
        ],
    )
    def test_invalid_values(self, kwargs: dict, message: str) -> None:
        with pytest.raises(ValueError, match=message):
            RetryConfig(**kwargs)


class TestBackoff:
    """Tests for calculate_backoff and max_redelivery_window."""

    def test_exponential_growth_without_jitter(self) -> None:
        config = RetryConfig(initial_delay=1.0, max_delay=30.0, jitter=0.0)

        assert [calculate_backoff(n, config) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_base_delay_ignores_jitter(self) -> None:
        config = RetryConfig(initial_delay=0.5, max_delay=3.0, jitter=1.0)

        assert [config.base_delay(n) for n in range(4)] == [0.5, 1.0, 2.0, 3.0]

    def test_capped_at_max_delay(self) -> None:
        config = RetryConfig(initial_delay=1.0, max_delay=30.0, jitter=0.0)

        assert calculate_backoff(10, config) == 30.0

    def test_jitter_stays_in_range(self) -> None:
        config = RetryConfig(initial_delay=1.0, max_delay=30.0, jitter=0.5)

        for _ in range(50):
            assert 0.5 <= calculate_backoff(0, config) <= 1.5

    def test_redelivery_window(self) -> None:
        """Four retries of 1, 2, 4 and 8 seconds with 10% jitter headroom."""
        config = RetryConfig(max_attempts=5, initial_delay=1.0, max_delay=30.0, jitter=0.1)

        assert max_redelivery_window(config) == pytest.approx(16.5)

    def test_single_attempt_has_no_window(self) -> None:
        assert max_redelivery_window(RetryConfig(max_attempts=1)) == 0.0

