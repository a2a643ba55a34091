"""Tests for the failed_webhooks store queries."""
from datetime import timedelta

import pytest
import sqlalchemy

from webhook_retry.models import WebhookStatus, failed_webhooks
from webhook_retry.services.store import FailedWebhookStore


def insert(store, webhook_type="order_paid", due_in=timedelta(0), max_attempts=3, event_id=None, **kwargs):
    return store.insert(
        webhook_type=webhook_type,
        webhook_url=f"/webhooks/{webhook_type}",
        payload={"id": 1},
        headers={"X-Topic": webhook_type},
        max_attempts=max_attempts,
        next_retry_at=store.now() + due_in,
        error_message=kwargs.get("error_message", "boom"),
        error_stack=None,
        event_id=event_id,
    )


def test_insert_creates_pending_record(store, clock):
    webhook_id = insert(store)

    record = store.get(webhook_id)
    assert record.status == WebhookStatus.PENDING
    assert record.attempt_count == 0
    assert record.max_attempts == 3
    assert record.payload == {"id": 1}
    assert record.headers == {"X-Topic": "order_paid"}
    assert record.payload_version == 1
    assert record.created_at == clock()


def test_insert_without_headers_stores_null(store, engine):
    webhook_id = store.insert(
        webhook_type="order_paid",
        webhook_url="/webhooks/order_paid",
        payload={"id": 1},
        headers=None,
        max_attempts=3,
        next_retry_at=store.now(),
        error_message="boom",
        error_stack=None,
    )

    with engine.begin() as conn:
        raw = conn.execute(
            sqlalchemy.text("SELECT headers FROM failed_webhooks WHERE id = :id"),
            {"id": webhook_id}
        ).scalar()
    assert raw is None


def test_insert_duplicate_event_id_is_ignored(store):
    first = insert(store, event_id="evt_123")
    second = insert(store, event_id="evt_123")

    assert first is not None
    assert second is None
    assert len(store.select_due(10)) == 1


def test_records_without_event_id_are_not_deduplicated(store):
    assert insert(store) != insert(store)


def test_select_due_filters_and_orders(store, clock):
    later = insert(store, due_in=timedelta(seconds=30))
    oldest = insert(store, due_in=timedelta(seconds=-20))
    newer = insert(store, due_in=timedelta(seconds=-10))

    due = store.select_due(10)

    assert [r.id for r in due] == [oldest, newer]
    assert later not in [r.id for r in due]


def test_select_due_excludes_exhausted_records(store):
    webhook_id = insert(store)
    store.update(webhook_id, attempt_count=3)

    assert store.select_due(10) == []


def test_select_due_is_read_only(store):
    webhook_id = insert(store)
    store.select_due(10)
    assert store.get(webhook_id).status == WebhookStatus.PENDING


def test_claim_due_marks_processing(store):
    first = insert(store, due_in=timedelta(seconds=-5))
    second = insert(store, due_in=timedelta(seconds=-1))
    insert(store, due_in=timedelta(minutes=5))

    claimed = store.claim_due(10)

    assert [r.id for r in claimed] == [first, second]
    assert all(r.status == WebhookStatus.PROCESSING for r in claimed)
    assert store.get(first).status == WebhookStatus.PROCESSING


def test_claim_due_respects_limit(store):
    ids = [insert(store, due_in=timedelta(seconds=-i)) for i in range(5)]

    claimed = store.claim_due(2)

    # oldest next_retry_at first
    assert [r.id for r in claimed] == [ids[4], ids[3]]


def test_second_claim_gets_nothing(store):
    """A record claimed by one worker is invisible to the next claim."""
    insert(store)

    assert len(store.claim_due(10)) == 1
    assert store.claim_due(10) == []


def test_mark_processing_is_compare_and_swap(store):
    webhook_id = insert(store)

    assert store.mark_processing(webhook_id) is True
    assert store.mark_processing(webhook_id) is False


def test_update_bumps_updated_at(store, clock):
    webhook_id = insert(store)
    clock.advance(minutes=3)

    store.update(webhook_id, error_message="new")

    record = store.get(webhook_id)
    assert record.error_message == "new"
    assert record.updated_at == clock()


def test_update_rejects_unknown_columns(store):
    webhook_id = insert(store)
    with pytest.raises(ValueError):
        store.update(webhook_id, payload={})


def test_update_without_fields_is_noop(store):
    webhook_id = insert(store)
    assert store.update(webhook_id) == 0


def test_mark_failed_appends_reason(store):
    webhook_id = insert(store, error_message="timeout talking to EHR")

    assert store.mark_failed(webhook_id, "Max retry attempts (3) exceeded") is True

    record = store.get(webhook_id)
    assert record.status == WebhookStatus.FAILED
    assert record.error_message == "timeout talking to EHR | Max retry attempts (3) exceeded"


def test_mark_failed_with_null_error(store, engine):
    webhook_id = insert(store)
    with engine.begin() as conn:
        conn.execute(
            sqlalchemy.update(failed_webhooks).where(failed_webhooks.c.id == webhook_id).values(error_message=None)
        )

    store.mark_failed(webhook_id, "No handler registered for webhook type: order_paid")

    assert store.get(webhook_id).error_message == "No handler registered for webhook type: order_paid"


def test_mark_failed_writes_extra_fields(store):
    webhook_id = insert(store)

    store.mark_failed(webhook_id, "Max retry attempts (3) exceeded", attempt_count=3, error_message="last error")

    record = store.get(webhook_id)
    assert record.attempt_count == 3
    assert record.error_message == "boom | last error | Max retry attempts (3) exceeded"


def test_mark_failed_does_not_touch_terminal_records(store):
    webhook_id = insert(store)
    store.update(webhook_id, status=WebhookStatus.SUCCEEDED)

    assert store.mark_failed(webhook_id, "late failure") is False
    assert store.get(webhook_id).status == WebhookStatus.SUCCEEDED


def test_mark_failed_cannot_override_status(store):
    webhook_id = insert(store)
    with pytest.raises(ValueError):
        store.mark_failed(webhook_id, "reason", status="pending")


def test_reset_for_replay_only_for_failed(store, clock):
    webhook_id = insert(store)
    assert store.reset_for_replay(webhook_id) is None

    store.update(webhook_id, attempt_count=3)
    store.mark_failed(webhook_id, "done")
    clock.advance(hours=1)

    record = store.reset_for_replay(webhook_id)

    assert record.status == WebhookStatus.PENDING
    assert record.attempt_count == 0
    assert record.next_retry_at == clock()


def test_delete_failed_only_deletes_failed(store):
    webhook_id = insert(store)
    assert store.delete_failed(webhook_id) is False

    store.mark_failed(webhook_id, "done")
    assert store.delete_failed(webhook_id) is True
    assert store.get(webhook_id) is None


def test_release_stale_claims(store, clock):
    stale = insert(store)
    store.claim_due(10)
    clock.advance(minutes=20)
    fresh = insert(store)
    store.claim_due(10)

    released = store.release_stale_claims(clock() - timedelta(minutes=15))

    assert released == 1
    assert store.get(stale).status == WebhookStatus.PENDING
    assert store.get(stale).next_retry_at == clock()
    assert store.get(fresh).status == WebhookStatus.PROCESSING


def test_count_by_status_and_type(store):
    insert(store, webhook_type="order_paid")
    insert(store, webhook_type="order_paid")
    failed = insert(store, webhook_type="patient_created")
    store.mark_failed(failed, "done")

    rows = store.count_by_status_and_type()

    assert ("pending", "order_paid", 2) in rows
    assert ("failed", "patient_created", 1) in rows


def test_create_schema_is_idempotent(engine, clock):
    store = FailedWebhookStore(engine, clock=clock)
    store.create_schema()
    store.create_schema()
    assert insert(store) is not None


def test_renew_claim_requires_current_lease(store, clock):
    webhook_id = insert(store)
    claimed = store.claim_due(10)[0]
    clock.advance(minutes=2)

    lease = store.renew_claim(webhook_id, claimed.updated_at)

    assert lease == clock()
    assert store.get(webhook_id).updated_at == lease
    # The old stamp no longer identifies the claim
    assert store.renew_claim(webhook_id, claimed.updated_at) is None


def test_renew_claim_after_release_fails(store, clock):
    webhook_id = insert(store)
    claimed = store.claim_due(10)[0]
    clock.advance(minutes=20)
    store.release_stale_claims(clock() - timedelta(minutes=15))

    assert store.renew_claim(webhook_id, claimed.updated_at) is None


def test_update_with_lease_only_applies_to_owner(store, clock):
    webhook_id = insert(store)
    claimed = store.claim_due(10)[0]

    assert store.update(webhook_id, lease=claimed.updated_at - timedelta(seconds=1), status=WebhookStatus.SUCCEEDED) == 0
    assert store.update(webhook_id, lease=claimed.updated_at, status=WebhookStatus.SUCCEEDED) == 1
    assert store.get(webhook_id).status == WebhookStatus.SUCCEEDED


def test_mark_failed_with_stale_lease(store, clock):
    webhook_id = insert(store)
    claimed = store.claim_due(10)[0]
    clock.advance(minutes=1)
    store.renew_claim(webhook_id, claimed.updated_at)

    assert store.mark_failed(webhook_id, "done", lease=claimed.updated_at) is False
    assert store.get(webhook_id).status == WebhookStatus.PROCESSING


def test_mark_failed_keeps_error_history(store):
    webhook_id = insert(store, error_message="attempt 1: timeout")
    store.update(webhook_id, error_message="attempt 2: 502")

    store.mark_failed(webhook_id, "Max retry attempts (3) exceeded", error_message="attempt 3: 503")

    assert store.get(webhook_id).error_message == (
        "attempt 2: 502 | attempt 3: 503 | Max retry attempts (3) exceeded"
    )
