"""Dead letter queue for permanently failed webhooks.

A record lands here (status 'failed') when its retries are exhausted or no
handler exists for its type. Nothing leaves the queue automatically; an
operator either replays or deletes each entry.
"""
from __future__ import annotations

import logging
from typing import Any

from ..errors import WebhookNotInDeadLetterQueue
from ..models import FailedWebhookRecord, WebhookStatus
from .context import WebhookHandler
from .store import FailedWebhookStore
from .webhook_retry import RetryResult, WebhookRetryService

log = logging.getLogger(__name__)

STATUSES = tuple(s.value for s in WebhookStatus)


def empty_statistics() -> dict[str, Any]:
    stats: dict[str, Any] = {status: 0 for status in STATUSES}
    stats["byType"] = {}
    return stats


class DeadLetterQueue:
    def __init__(self, store: FailedWebhookStore, retry_service: WebhookRetryService):
        self.store = store
        self.retry_service = retry_service
        retry_service.dead_letter_queue = self

    def move_to_dead_letter_queue(
        self, webhook_id: int, reason: str = "Max retry attempts exceeded", **fields: Any
    ) -> bool:
        """Mark a record permanently failed, appending ``reason`` to its error history."""
        try:
            moved = self.store.mark_failed(webhook_id, reason, **fields)
        except Exception as e:
            log.error(f"[DeadLetterQueue] Failed to move webhook {webhook_id} to DLQ: {e}", exc_info=True)
            raise

        if moved:
            log.warning(f"[DeadLetterQueue] Moved webhook {webhook_id} to DLQ: {reason}")
        else:
            log.warning(f"[DeadLetterQueue] Webhook {webhook_id} not moved to DLQ (missing or already terminal)")
        return moved

    def get_dead_letter_queue(
        self, limit: int = 50, offset: int = 0, webhook_type: str | None = None
    ) -> list[FailedWebhookRecord]:
        """Failed records, most recently updated first."""
        try:
            return self.store.list_failed(limit=limit, offset=offset, webhook_type=webhook_type)
        except Exception as e:
            log.error(f"[DeadLetterQueue] Failed to get DLQ records: {e}", exc_info=True)
            return []

    def get_dead_letter_queue_count(self, webhook_type: str | None = None) -> int:
        try:
            return self.store.count_failed(webhook_type=webhook_type)
        except Exception as e:
            log.error(f"[DeadLetterQueue] Failed to get DLQ count: {e}", exc_info=True)
            return 0

    async def replay_webhook(self, webhook_id: int, handler: WebhookHandler) -> RetryResult:
        """Reset a dead-lettered record and process it immediately.

        Raises WebhookNotInDeadLetterQueue if the record is missing or not failed.
        """
        try:
            record = self.store.reset_for_replay(webhook_id)
        except Exception as e:
            log.error(f"[DeadLetterQueue] Failed to replay webhook {webhook_id}: {e}", exc_info=True)
            raise

        if record is None:
            raise WebhookNotInDeadLetterQueue(webhook_id)

        log.info(f"[DeadLetterQueue] Replaying webhook {webhook_id} from DLQ (type={record.webhook_type})")
        return await self.retry_service.process_webhook_retry(record, handler)

    def delete_from_dead_letter_queue(self, webhook_id: int) -> bool:
        """Hard-delete a failed record. Returns False if it was not in the queue."""
        try:
            deleted = self.store.delete_failed(webhook_id)
        except Exception as e:
            log.error(f"[DeadLetterQueue] Failed to delete webhook {webhook_id} from DLQ: {e}", exc_info=True)
            raise

        if deleted:
            log.info(f"[DeadLetterQueue] Deleted webhook {webhook_id} from DLQ")
        else:
            log.info(f"[DeadLetterQueue] Webhook {webhook_id} not in DLQ, nothing deleted")
        return deleted

    def get_webhook_statistics(self) -> dict[str, Any]:
        """Record counts by status, overall and per webhook type."""
        try:
            rows = self.store.count_by_status_and_type()
        except Exception as e:
            log.error(f"[DeadLetterQueue] Failed to get webhook statistics: {e}", exc_info=True)
            return empty_statistics()

        stats = empty_statistics()
        for status, webhook_type, count in rows:
            if status in stats:
                stats[status] += count
            by_type = stats["byType"].setdefault(webhook_type, {s: 0 for s in STATUSES})
            by_type[status] = count

        return stats
