"""Exponential backoff policy for webhook retries."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from ..config import get_settings

settings = get_settings()

MAX_ATTEMPTS = settings.WEBHOOK_MAX_RETRY_ATTEMPTS
INITIAL_RETRY_DELAY_MS = settings.WEBHOOK_INITIAL_RETRY_DELAY_MS
MAX_RETRY_DELAY_MS = settings.WEBHOOK_MAX_RETRY_DELAY_MS


def calculate_retry_delay(
    attempt_count: int,
    initial_delay_ms: int = INITIAL_RETRY_DELAY_MS,
    max_delay_ms: int = MAX_RETRY_DELAY_MS,
) -> int:
    """Delay in milliseconds before the retry that follows ``attempt_count`` attempts.

    delay(n) = min(initial_delay_ms * 2**n, max_delay_ms)
    """
    attempt_count = max(attempt_count, 0)
    # Once the doubling passes the cap there is no need to keep growing the int
    if initial_delay_ms > 0 and attempt_count >= max_delay_ms.bit_length():
        return max_delay_ms
    return min(initial_delay_ms * (2 ** attempt_count), max_delay_ms)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits shared by the intake recorder, processor and scheduler job."""
    max_attempts: int = MAX_ATTEMPTS
    initial_delay_ms: int = INITIAL_RETRY_DELAY_MS
    max_delay_ms: int = MAX_RETRY_DELAY_MS
    batch_size: int = settings.WEBHOOK_RETRY_BATCH_SIZE
    handler_timeout_seconds: float = settings.WEBHOOK_HANDLER_TIMEOUT_SECONDS  # 0 = no timeout
    processing_timeout_seconds: int = settings.WEBHOOK_PROCESSING_TIMEOUT_SECONDS

    @classmethod
    def from_settings(cls, s=None) -> "RetryPolicy":
        s = s or get_settings()
        return cls(
            max_attempts=s.WEBHOOK_MAX_RETRY_ATTEMPTS,
            initial_delay_ms=s.WEBHOOK_INITIAL_RETRY_DELAY_MS,
            max_delay_ms=s.WEBHOOK_MAX_RETRY_DELAY_MS,
            batch_size=s.WEBHOOK_RETRY_BATCH_SIZE,
            handler_timeout_seconds=s.WEBHOOK_HANDLER_TIMEOUT_SECONDS,
            processing_timeout_seconds=s.WEBHOOK_PROCESSING_TIMEOUT_SECONDS,
        )

    def delay_ms(self, attempt_count: int) -> int:
        return calculate_retry_delay(attempt_count, self.initial_delay_ms, self.max_delay_ms)

    def delay(self, attempt_count: int) -> timedelta:
        return timedelta(milliseconds=self.delay_ms(attempt_count))
