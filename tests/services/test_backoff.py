"""Tests for the exponential backoff policy."""
from datetime import timedelta

from webhook_retry.services.backoff import RetryPolicy, calculate_retry_delay


class TestCalculateRetryDelay:
    def test_first_delay_is_initial_delay(self):
        assert calculate_retry_delay(0, 60000, 3600000) == 60000

    def test_doubles_each_attempt(self):
        assert calculate_retry_delay(1, 60000, 3600000) == 120000
        assert calculate_retry_delay(2, 60000, 3600000) == 240000
        assert calculate_retry_delay(5, 60000, 3600000) == 1920000

    def test_capped_at_max_delay(self):
        """60s * 2**6 = 3840s is over the one hour cap"""
        assert calculate_retry_delay(6, 60000, 3600000) == 3600000
        assert calculate_retry_delay(50, 60000, 3600000) == 3600000

    def test_huge_attempt_count_stays_capped(self):
        assert calculate_retry_delay(10_000, 1000, 5000) == 5000

    def test_matches_formula(self):
        for n in range(20):
            assert calculate_retry_delay(n, 1000, 60000) == min(1000 * 2 ** n, 60000)

    def test_monotonically_non_decreasing(self):
        delays = [calculate_retry_delay(n, 1000, 60000) for n in range(40)]
        assert all(a <= b for a, b in zip(delays, delays[1:]))

    def test_negative_attempt_treated_as_zero(self):
        assert calculate_retry_delay(-3, 1000, 60000) == 1000

    def test_defaults_come_from_settings(self):
        from webhook_retry.services import backoff

        assert calculate_retry_delay(0) == backoff.INITIAL_RETRY_DELAY_MS


class TestRetryPolicy:
    def test_delay_returns_timedelta(self):
        policy = RetryPolicy(initial_delay_ms=1000, max_delay_ms=60000)
        assert policy.delay(0) == timedelta(seconds=1)
        assert policy.delay(3) == timedelta(seconds=8)

    def test_from_settings(self):
        class FakeSettings:
            WEBHOOK_MAX_RETRY_ATTEMPTS = 7
            WEBHOOK_INITIAL_RETRY_DELAY_MS = 500
            WEBHOOK_MAX_RETRY_DELAY_MS = 4000
            WEBHOOK_RETRY_BATCH_SIZE = 5
            WEBHOOK_HANDLER_TIMEOUT_SECONDS = 0
            WEBHOOK_PROCESSING_TIMEOUT_SECONDS = 60

        policy = RetryPolicy.from_settings(FakeSettings())

        assert policy.max_attempts == 7
        assert policy.batch_size == 5
        assert policy.delay_ms(10) == 4000
