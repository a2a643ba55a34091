"""Schema and value types for failed inbound webhooks.

The ``failed_webhooks`` table is the only state the retry engine owns. It is
declared here once with SQLAlchemy Core so the store, the Alembic revision and
the tests all agree on the same columns.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Bump when the stored payload shape changes so old rows can be migrated
PAYLOAD_VERSION = 1

JSONType = sa.JSON(none_as_null=True).with_variant(postgresql.JSONB(none_as_null=True), "postgresql")

metadata = sa.MetaData()


class WebhookStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


failed_webhooks = sa.Table(
    "failed_webhooks",
    metadata,
    sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("webhook_type", sa.String(100), nullable=False),
    sa.Column("webhook_url", sa.String(500), nullable=False),
    sa.Column("event_id", sa.String(255), nullable=True),  # Provider event id, used for de-duplication
    sa.Column("payload", JSONType, nullable=False),
    sa.Column("headers", JSONType, nullable=True),
    sa.Column("payload_version", sa.Integer(), nullable=False, default=PAYLOAD_VERSION),
    sa.Column("attempt_count", sa.Integer(), nullable=False, default=0),
    sa.Column("max_attempts", sa.Integer(), nullable=False, default=5),
    sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("error_stack", sa.Text(), nullable=True),
    sa.Column("status", sa.String(20), nullable=False, default=WebhookStatus.PENDING.value),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    # Scheduler scans
    sa.Index("idx_failed_webhooks_status_next_retry", "status", "next_retry_at"),
    # Dead letter queue queries
    sa.Index("idx_failed_webhooks_status_attempts", "status", "attempt_count"),
    sa.Index("idx_failed_webhooks_webhook_type", "webhook_type"),
    sa.Index("idx_failed_webhooks_created_at", "created_at"),
    sa.Index("idx_failed_webhooks_event_id", "event_id", unique=True),
)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps (SQLite hands them back without tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class FailedWebhookRecord:
    """One row of ``failed_webhooks``."""
    id: int
    webhook_type: str
    webhook_url: str
    payload: Any
    headers: dict[str, Any] | None
    attempt_count: int
    max_attempts: int
    next_retry_at: datetime | None
    error_message: str | None
    error_stack: str | None
    status: WebhookStatus
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_attempt_at: datetime | None = None
    event_id: str | None = None
    payload_version: int = PAYLOAD_VERSION

    @classmethod
    def from_row(cls, row) -> "FailedWebhookRecord":
        m = row._mapping
        return cls(
            id=m["id"],
            webhook_type=m["webhook_type"],
            webhook_url=m["webhook_url"],
            payload=m["payload"],
            headers=m["headers"],
            attempt_count=m["attempt_count"],
            max_attempts=m["max_attempts"],
            next_retry_at=as_utc(m["next_retry_at"]),
            error_message=m["error_message"],
            error_stack=m["error_stack"],
            status=WebhookStatus(m["status"]),
            created_at=as_utc(m["created_at"]),
            updated_at=as_utc(m["updated_at"]),
            last_attempt_at=as_utc(m["last_attempt_at"]),
            event_id=m["event_id"],
            payload_version=m["payload_version"],
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API response."""
        return {
            "id": self.id,
            "webhook_type": self.webhook_type,
            "webhook_url": self.webhook_url,
            "event_id": self.event_id,
            "payload": self.payload,
            "headers": self.headers,
            "payload_version": self.payload_version,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "error_message": self.error_message,
            "error_stack": self.error_stack,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
