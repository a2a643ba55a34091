from datetime import UTC, datetime, timedelta

import pytest
import sqlalchemy
from sqlalchemy.pool import StaticPool

from webhook_retry.models import metadata
from webhook_retry.runtime import build_runtime
from webhook_retry.services.backoff import RetryPolicy


class FakeClock:
    """Controllable clock so tests can make records due without sleeping."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def engine():
    """In-memory SQLite database with the failed_webhooks schema."""
    engine = sqlalchemy.create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def policy():
    return RetryPolicy(
        max_attempts=3,
        initial_delay_ms=1000,
        max_delay_ms=60000,
        batch_size=20,
        handler_timeout_seconds=1.0,
        processing_timeout_seconds=900,
    )


@pytest.fixture
def runtime(engine, clock, policy):
    return build_runtime(engine=engine, clock=clock, policy=policy)


@pytest.fixture
def retry_service(runtime):
    return runtime.retry_service


@pytest.fixture
def dlq(runtime):
    return runtime.dead_letter_queue


@pytest.fixture
def store(runtime):
    return runtime.store


@pytest.fixture
def store_webhook(retry_service):
    """Helper to record a failed webhook and return its id"""
    def _store(webhook_type="order_paid", payload=None, headers=None, error=None, **kwargs):
        return retry_service.store_failed_webhook(
            webhook_type=webhook_type,
            webhook_url=f"/webhooks/{webhook_type}",
            payload=payload if payload is not None else {"order_id": 1001, "total": "49.00"},
            headers=headers,
            error=error or RuntimeError("handler exploded"),
            **kwargs,
        )
    return _store
