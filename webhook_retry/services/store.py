"""Persistence for failed webhook records.

Every query against ``failed_webhooks`` lives here. Each method runs in its own
``engine.begin()`` block so a failure rolls back only that statement.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine

from ..models import PAYLOAD_VERSION, FailedWebhookRecord, WebhookStatus, failed_webhooks

log = logging.getLogger(__name__)

t = failed_webhooks

UPDATABLE_FIELDS = frozenset({
    "status",
    "attempt_count",
    "next_retry_at",
    "last_attempt_at",
    "error_message",
    "error_stack",
})


def utcnow() -> datetime:
    return datetime.now(UTC)


class FailedWebhookStore:
    def __init__(self, engine: Engine, clock: Callable[[], datetime] | None = None):
        self.engine = engine
        self.clock = clock or utcnow

    def now(self) -> datetime:
        return self.clock()

    def create_schema(self) -> None:
        """Create the table and indexes if missing (tests and local dev; production uses Alembic)."""
        t.metadata.create_all(self.engine, tables=[t])

    # ==================== Writes ====================

    def insert(
        self,
        *,
        webhook_type: str,
        webhook_url: str,
        payload: Any,
        headers: dict[str, Any] | None,
        max_attempts: int,
        next_retry_at: datetime,
        error_message: str | None,
        error_stack: str | None,
        event_id: str | None = None,
    ) -> int | None:
        """Insert a pending record. Returns None when ``event_id`` was already recorded."""
        now = self.now()
        values = {
            "webhook_type": webhook_type,
            "webhook_url": webhook_url,
            "event_id": event_id,
            "payload": payload,
            "headers": headers,
            "payload_version": PAYLOAD_VERSION,
            "attempt_count": 0,
            "max_attempts": max_attempts,
            "next_retry_at": next_retry_at,
            "error_message": error_message,
            "error_stack": error_stack,
            "status": WebhookStatus.PENDING.value,
            "created_at": now,
            "updated_at": now,
        }

        with self.engine.begin() as conn:
            stmt = self._insert_statement(conn, deduplicate=event_id is not None)
            if stmt is None:
                return None
            row = conn.execute(stmt.values(**values).returning(t.c.id)).fetchone()

        return row.id if row else None

    def _insert_statement(self, conn, deduplicate: bool):
        if not deduplicate:
            return sa.insert(t)

        dialect = conn.dialect.name
        if dialect == "postgresql":
            return postgresql.insert(t).on_conflict_do_nothing(index_elements=["event_id"])
        if dialect == "sqlite":
            return sqlite.insert(t).on_conflict_do_nothing(index_elements=["event_id"])
        return sa.insert(t)

    def _owned_by(self, webhook_id: int, lease: datetime):
        # A claim is identified by the updated_at stamp its owner wrote
        return sa.and_(
            t.c.id == webhook_id,
            t.c.status == WebhookStatus.PROCESSING.value,
            t.c.updated_at == lease,
        )

    def update(self, webhook_id: int, lease: datetime | None = None, **fields: Any) -> int:
        """Partial update of a record. Returns the number of rows touched.

        With ``lease`` the update only applies while the caller still holds
        its processing claim.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update failed_webhooks columns: {sorted(unknown)}")
        if not fields:
            return 0

        values = {
            k: (v.value if isinstance(v, WebhookStatus) else v)
            for k, v in fields.items()
        }
        values["updated_at"] = self.now()

        where = self._owned_by(webhook_id, lease) if lease is not None else t.c.id == webhook_id
        with self.engine.begin() as conn:
            result = conn.execute(sa.update(t).where(where).values(**values))
            return result.rowcount

    def mark_processing(self, webhook_id: int, now: datetime | None = None) -> bool:
        """Compare-and-swap pending -> processing. True if this caller won the record."""
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.update(t)
                .where(t.c.id == webhook_id, t.c.status == WebhookStatus.PENDING.value)
                .values(status=WebhookStatus.PROCESSING.value, updated_at=now or self.now())
            )
            return result.rowcount == 1

    def renew_claim(self, webhook_id: int, lease: datetime) -> datetime | None:
        """Confirm the caller still owns a claimed record and restart its processing clock.

        Returns the new lease, or None if the record was released, reclaimed
        or finished by someone else since ``lease`` was taken.
        """
        now = self.now()
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.update(t).where(self._owned_by(webhook_id, lease)).values(updated_at=now)
            )
            return now if result.rowcount == 1 else None

    def mark_failed(self, webhook_id: int, reason: str, lease: datetime | None = None, **fields: Any) -> bool:
        """Move a non-terminal record to 'failed', appending ``reason`` to its error history.

        Extra ``fields`` (attempt_count, error_message, ...) are written in the
        same statement. A given ``error_message`` is appended to the stored
        history ahead of ``reason``. With ``lease`` the record must still be
        held by the caller.
        """
        rejected = (set(fields) - UPDATABLE_FIELDS) | ({"status"} & set(fields))
        if rejected:
            raise ValueError(f"Cannot set failed_webhooks columns while dead-lettering: {sorted(rejected)}")

        latest = fields.pop("error_message", None)
        suffix = f"{latest} | {reason}" if latest is not None else reason
        error_message = sa.func.coalesce(t.c.error_message + " | ", "") + suffix

        if lease is not None:
            where = self._owned_by(webhook_id, lease)
        else:
            where = sa.and_(
                t.c.id == webhook_id,
                t.c.status.in_([WebhookStatus.PENDING.value, WebhookStatus.PROCESSING.value]),
            )

        with self.engine.begin() as conn:
            result = conn.execute(
                sa.update(t)
                .where(where)
                .values(
                    status=WebhookStatus.FAILED.value,
                    error_message=error_message,
                    updated_at=self.now(),
                    **fields,
                )
            )
            return result.rowcount == 1

    def reset_for_replay(self, webhook_id: int) -> FailedWebhookRecord | None:
        """failed -> pending with a fresh attempt budget, due immediately."""
        now = self.now()
        with self.engine.begin() as conn:
            row = conn.execute(
                sa.update(t)
                .where(t.c.id == webhook_id, t.c.status == WebhookStatus.FAILED.value)
                .values(
                    status=WebhookStatus.PENDING.value,
                    attempt_count=0,
                    next_retry_at=now,
                    updated_at=now,
                )
                .returning(*t.c)
            ).fetchone()

        return FailedWebhookRecord.from_row(row) if row else None

    def delete_failed(self, webhook_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.delete(t).where(t.c.id == webhook_id, t.c.status == WebhookStatus.FAILED.value)
            )
            return result.rowcount > 0

    def release_stale_claims(self, older_than: datetime) -> int:
        """Return records stuck in 'processing' since before ``older_than`` to 'pending'."""
        now = self.now()
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.update(t)
                .where(t.c.status == WebhookStatus.PROCESSING.value, t.c.updated_at < older_than)
                .values(status=WebhookStatus.PENDING.value, next_retry_at=now, updated_at=now)
            )
            return result.rowcount

    # ==================== Scheduler queries ====================

    def _due_clause(self, now: datetime):
        return sa.and_(
            t.c.status == WebhookStatus.PENDING.value,
            t.c.next_retry_at <= now,
            t.c.attempt_count < t.c.max_attempts,
        )

    def select_due(self, limit: int, now: datetime | None = None) -> list[FailedWebhookRecord]:
        """Due records, oldest next_retry_at first. Read-only."""
        now = now or self.now()
        with self.engine.begin() as conn:
            rows = conn.execute(
                sa.select(t)
                .where(self._due_clause(now))
                .order_by(t.c.next_retry_at.asc(), t.c.id.asc())
                .limit(limit)
            ).fetchall()

        return [FailedWebhookRecord.from_row(row) for row in rows]

    def claim_due(self, limit: int, now: datetime | None = None) -> list[FailedWebhookRecord]:
        """Atomically move up to ``limit`` due records to 'processing' and return them.

        On Postgres the inner select takes row locks with SKIP LOCKED, so
        concurrent schedulers never claim the same row. SQLite serialises
        writers and ignores FOR UPDATE.
        """
        now = now or self.now()
        due_ids = (
            sa.select(t.c.id)
            .where(self._due_clause(now))
            .order_by(t.c.next_retry_at.asc(), t.c.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )

        with self.engine.begin() as conn:
            rows = conn.execute(
                sa.update(t)
                .where(t.c.id.in_(due_ids))
                .values(status=WebhookStatus.PROCESSING.value, updated_at=now)
                .returning(*t.c)
            ).fetchall()

        records = [FailedWebhookRecord.from_row(row) for row in rows]
        # RETURNING order is not guaranteed
        records.sort(key=lambda r: (r.next_retry_at or now, r.id))
        return records

    # ==================== Reads ====================

    def get(self, webhook_id: int) -> FailedWebhookRecord | None:
        with self.engine.begin() as conn:
            row = conn.execute(sa.select(t).where(t.c.id == webhook_id)).fetchone()
        return FailedWebhookRecord.from_row(row) if row else None

    def list_failed(
        self, limit: int = 50, offset: int = 0, webhook_type: str | None = None
    ) -> list[FailedWebhookRecord]:
        stmt = sa.select(t).where(t.c.status == WebhookStatus.FAILED.value)
        if webhook_type:
            stmt = stmt.where(t.c.webhook_type == webhook_type)
        stmt = stmt.order_by(t.c.updated_at.desc(), t.c.id.desc()).limit(limit).offset(offset)

        with self.engine.begin() as conn:
            rows = conn.execute(stmt).fetchall()
        return [FailedWebhookRecord.from_row(row) for row in rows]

    def count_failed(self, webhook_type: str | None = None) -> int:
        stmt = sa.select(sa.func.count()).select_from(t).where(t.c.status == WebhookStatus.FAILED.value)
        if webhook_type:
            stmt = stmt.where(t.c.webhook_type == webhook_type)

        with self.engine.begin() as conn:
            return int(conn.execute(stmt).scalar() or 0)

    def count_by_status_and_type(self) -> list[tuple[str, str, int]]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                sa.select(t.c.status, t.c.webhook_type, sa.func.count().label("count"))
                .group_by(t.c.status, t.c.webhook_type)
                .order_by(t.c.status, t.c.webhook_type)
            ).fetchall()
        return [(row.status, row.webhook_type, int(row.count)) for row in rows]
