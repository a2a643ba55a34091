"""Retry processing for inbound webhooks whose handler failed.

Flow:
1. A live webhook endpoint catches a handler failure and calls
   ``store_failed_webhook`` so the event is not lost.
2. The scheduler job calls ``process_pending_webhooks`` on an interval. Due
   records are claimed atomically, replayed against their handler and either
   marked succeeded, rescheduled with exponential backoff, or moved to the
   dead letter queue once their attempt budget is spent.
"""
from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from ..errors import HandlerTimeout
from ..models import FailedWebhookRecord, WebhookStatus
from .backoff import RetryPolicy
from .context import HandlerRegistry, WebhookContext, WebhookHandler
from .store import FailedWebhookStore

if TYPE_CHECKING:
    from .dead_letter_queue import DeadLetterQueue

log = logging.getLogger(__name__)


class RetryOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    RESCHEDULED = "rescheduled"
    DEAD_LETTERED = "dead_lettered"
    SKIPPED = "skipped"  # Another worker owns the record
    ERROR = "error"  # Storage failed while recording the outcome


@dataclass
class RetryResult:
    """Outcome of one processing attempt."""
    webhook_id: int
    outcome: RetryOutcome
    next_retry_at: datetime | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome == RetryOutcome.SUCCEEDED

    @property
    def permanent(self) -> bool:
        return self.outcome == RetryOutcome.DEAD_LETTERED

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "webhook_id": self.webhook_id,
            "outcome": self.outcome.value,
            "permanent": self.permanent,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "error": self.error,
        }


@dataclass
class BatchResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    rescheduled: int = 0
    errors: int = 0

    def add(self, result: RetryResult) -> None:
        if result.outcome == RetryOutcome.SUCCEEDED:
            self.succeeded += 1
        elif result.outcome == RetryOutcome.DEAD_LETTERED:
            self.failed += 1
        elif result.outcome == RetryOutcome.RESCHEDULED:
            self.rescheduled += 1
        elif result.outcome == RetryOutcome.ERROR:
            self.errors += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "rescheduled": self.rescheduled,
            "errors": self.errors,
        }


def describe_error(error: Any) -> tuple[str, str | None]:
    """Message and formatted stack for whatever the caller handed us as the failure."""
    if error is None:
        return "Unknown error", None
    if isinstance(error, BaseException):
        message = str(error) or type(error).__name__
        stack = None
        if error.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return message, stack
    return str(error), None


class WebhookRetryService:
    def __init__(
        self,
        store: FailedWebhookStore,
        policy: RetryPolicy | None = None,
        dead_letter_queue: "DeadLetterQueue | None" = None,
    ):
        self.store = store
        self.policy = policy or RetryPolicy.from_settings()
        self.dead_letter_queue = dead_letter_queue

    @property
    def max_attempts(self) -> int:
        return self.policy.max_attempts

    def calculate_retry_delay(self, attempt_count: int) -> int:
        """Backoff delay in milliseconds under this service's policy."""
        return self.policy.delay_ms(attempt_count)

    # ==================== Intake ====================

    def store_failed_webhook(
        self,
        webhook_type: str,
        webhook_url: str,
        payload: Any,
        headers: dict[str, Any] | None = None,
        error: Any = None,
        event_id: str | None = None,
    ) -> int | None:
        """Record a failed webhook for retry. Never raises.

        Called from the live webhook request path, so a storage outage is
        logged and swallowed rather than failing the original request.
        """
        try:
            error_message, error_stack = describe_error(error)
            next_retry_at = self.store.now() + self.policy.delay(0)

            webhook_id = self.store.insert(
                webhook_type=webhook_type,
                webhook_url=webhook_url,
                payload=payload,
                headers=headers,
                max_attempts=self.policy.max_attempts,
                next_retry_at=next_retry_at,
                error_message=error_message,
                error_stack=error_stack,
                event_id=event_id,
            )
        except Exception as e:
            log.error(f"[WebhookRetry] Failed to store failed webhook ({webhook_type}): {e}", exc_info=True)
            return None

        if webhook_id is None:
            log.info(f"[WebhookRetry] Webhook {webhook_type} event {event_id} already recorded, skipping")
            return None

        log.warning(
            f"[WebhookRetry] Stored failed webhook {webhook_id} for retry: "
            f"type={webhook_type}, url={webhook_url}, next_retry_at={next_retry_at.isoformat()}"
        )
        return webhook_id

    # ==================== Scheduling ====================

    def get_pending_webhooks(self, limit: int = 10) -> list[FailedWebhookRecord]:
        """Due records (oldest first) without claiming them. Returns [] on storage errors."""
        try:
            return self.store.select_due(limit)
        except Exception as e:
            log.error(f"[WebhookRetry] Failed to get pending webhooks: {e}", exc_info=True)
            return []

    def claim_pending_webhooks(self, limit: int) -> list[FailedWebhookRecord]:
        """Atomically claim due records for this worker. Returns [] on storage errors."""
        try:
            return self.store.claim_due(limit)
        except Exception as e:
            log.error(f"[WebhookRetry] Failed to claim pending webhooks: {e}", exc_info=True)
            return []

    def release_stale_claims(self) -> int:
        if self.policy.processing_timeout_seconds <= 0:
            return 0
        cutoff = self.store.now() - timedelta(seconds=self.policy.processing_timeout_seconds)
        try:
            released = self.store.release_stale_claims(cutoff)
        except Exception as e:
            log.error(f"[WebhookRetry] Failed to release stale claims: {e}", exc_info=True)
            return 0

        if released:
            log.warning(f"[WebhookRetry] Released {released} webhook(s) stuck in processing since before {cutoff.isoformat()}")
        return released

    def update_webhook_status(
        self,
        webhook_id: int,
        status: WebhookStatus | str | None = None,
        attempt_count: int | None = None,
        next_retry_at: datetime | None = None,
        error_message: str | None = None,
        error_stack: str | None = None,
    ) -> None:
        """Partial update of a record; storage errors are logged and re-raised."""
        updates: dict[str, Any] = {}
        if status is not None:
            updates["status"] = WebhookStatus(status)
        if attempt_count is not None:
            updates["attempt_count"] = attempt_count
        if next_retry_at is not None:
            updates["next_retry_at"] = next_retry_at
        if error_message is not None:
            updates["error_message"] = error_message
        if error_stack is not None:
            updates["error_stack"] = error_stack

        if not updates:
            return

        try:
            self.store.update(webhook_id, **updates)
        except Exception as e:
            log.error(f"[WebhookRetry] Failed to update webhook {webhook_id}: {e}", exc_info=True)
            raise

    # ==================== Processing ====================

    async def _call_handler(self, handler: WebhookHandler, context: WebhookContext) -> None:
        if inspect.iscoroutinefunction(handler):
            await handler(context)
            return

        # Plain functions run off the event loop so a slow one cannot stall the batch
        result = await asyncio.to_thread(handler, context)
        if inspect.isawaitable(result):
            await result

    async def _invoke(self, handler: WebhookHandler, context: WebhookContext) -> None:
        timeout = self.policy.handler_timeout_seconds
        if not timeout or timeout <= 0:
            await self._call_handler(handler, context)
            return

        try:
            await asyncio.wait_for(self._call_handler(handler, context), timeout)
        except asyncio.TimeoutError:
            # A sync handler's thread cannot be interrupted and finishes in the background
            raise HandlerTimeout(context.webhook_id, timeout) from None

    def _dead_letter(self, webhook_id: int, reason: str, **fields: Any) -> bool:
        if self.dead_letter_queue is not None:
            return self.dead_letter_queue.move_to_dead_letter_queue(webhook_id, reason, **fields)
        return self.store.mark_failed(webhook_id, reason, **fields)

    def _acquire(self, record: FailedWebhookRecord, claimed: bool) -> datetime | None:
        """Take or confirm ownership of ``record``. Returns the lease stamp, None if lost."""
        if claimed:
            if record.updated_at is None:
                return None
            return self.store.renew_claim(record.id, record.updated_at)

        lease = self.store.now()
        return lease if self.store.mark_processing(record.id, now=lease) else None

    async def process_webhook_retry(
        self,
        record: FailedWebhookRecord,
        handler: WebhookHandler,
        claimed: bool = False,
    ) -> RetryResult:
        """Replay one record against its handler and persist the outcome.

        ``claimed`` means the caller already moved the record to 'processing'
        (the batch claim does this); ownership is re-checked against the
        claim's ``updated_at`` before the handler runs. Otherwise the record
        is claimed here. Either way the record is skipped if another worker
        owns it now.
        """
        webhook_id = record.id
        attempt = record.attempt_count + 1
        log.info(
            f"[WebhookRetry] Processing retry {attempt}/{record.max_attempts} for webhook {webhook_id} "
            f"(type={record.webhook_type})"
        )

        try:
            lease = self._acquire(record, claimed)
        except Exception as e:
            log.error(f"[WebhookRetry] Failed to claim webhook {webhook_id}: {e}", exc_info=True)
            return RetryResult(webhook_id, RetryOutcome.ERROR, error=str(e))
        if lease is None:
            log.info(f"[WebhookRetry] Webhook {webhook_id} is owned by another worker or finished, skipping")
            return RetryResult(webhook_id, RetryOutcome.SKIPPED)

        try:
            await self._invoke(handler, WebhookContext.from_record(record))
        except Exception as e:
            return self._record_failure(record, lease, e)

        return self._record_success(record, lease)

    def _lost_claim(self, webhook_id: int) -> RetryResult:
        log.warning(f"[WebhookRetry] Lost claim on webhook {webhook_id} while processing, outcome discarded")
        return RetryResult(webhook_id, RetryOutcome.SKIPPED)

    def _record_success(self, record: FailedWebhookRecord, lease: datetime) -> RetryResult:
        try:
            updated = self.store.update(
                record.id,
                lease=lease,
                status=WebhookStatus.SUCCEEDED,
                attempt_count=record.attempt_count + 1,
                last_attempt_at=self.store.now(),
            )
        except Exception as e:
            # The record stays in 'processing' until released, so the handler may run again
            log.error(f"[WebhookRetry] Webhook {record.id} succeeded but status update failed: {e}", exc_info=True)
            return RetryResult(record.id, RetryOutcome.ERROR, error=str(e))

        if not updated:
            return self._lost_claim(record.id)

        log.info(f"[WebhookRetry] Webhook {record.id} retry succeeded")
        return RetryResult(record.id, RetryOutcome.SUCCEEDED)

    def _record_failure(self, record: FailedWebhookRecord, lease: datetime, error: Exception) -> RetryResult:
        new_attempt_count = record.attempt_count + 1
        error_message, error_stack = describe_error(error)
        now = self.store.now()

        try:
            if new_attempt_count >= record.max_attempts:
                moved = self._dead_letter(
                    record.id,
                    f"Max retry attempts ({record.max_attempts}) exceeded",
                    lease=lease,
                    attempt_count=new_attempt_count,
                    last_attempt_at=now,
                    error_message=error_message,
                    error_stack=error_stack,
                )
                if not moved:
                    return self._lost_claim(record.id)
                log.error(
                    f"[WebhookRetry] Webhook {record.id} permanently failed after {new_attempt_count} attempts "
                    f"- moved to DLQ: {error_message}"
                )
                return RetryResult(record.id, RetryOutcome.DEAD_LETTERED, error=error_message)

            next_retry_at = now + self.policy.delay(new_attempt_count)
            updated = self.store.update(
                record.id,
                lease=lease,
                status=WebhookStatus.PENDING,
                attempt_count=new_attempt_count,
                next_retry_at=next_retry_at,
                last_attempt_at=now,
                error_message=error_message,
                error_stack=error_stack,
            )
        except Exception as e:
            log.error(f"[WebhookRetry] Failed to record failure for webhook {record.id}: {e}", exc_info=True)
            return RetryResult(record.id, RetryOutcome.ERROR, error=str(e))

        if not updated:
            return self._lost_claim(record.id)

        log.warning(
            f"[WebhookRetry] Webhook {record.id} failed ({error_message}), "
            f"scheduled retry {new_attempt_count + 1} at {next_retry_at.isoformat()}"
        )
        return RetryResult(record.id, RetryOutcome.RESCHEDULED, next_retry_at=next_retry_at, error=error_message)

    async def process_pending_webhooks(
        self, handlers: dict[str, WebhookHandler] | HandlerRegistry | None = None
    ) -> BatchResult:
        """Claim and process one batch of due webhooks. Never raises."""
        if isinstance(handlers, HandlerRegistry):
            handlers = handlers.as_dict()
        handlers = handlers or {}
        result = BatchResult()

        self.release_stale_claims()
        pending = self.claim_pending_webhooks(self.policy.batch_size)
        if not pending:
            return result

        log.info(f"[WebhookRetry] Processing {len(pending)} pending webhook(s)")

        for record in pending:
            result.processed += 1
            handler = handlers.get(record.webhook_type)

            if handler is None:
                # Retrying can never succeed without a handler, so skip the backoff cycle
                log.warning(f"[WebhookRetry] No handler for webhook type: {record.webhook_type} (webhook {record.id})")
                try:
                    moved = self._dead_letter(
                        record.id,
                        f"No handler registered for webhook type: {record.webhook_type}",
                        lease=record.updated_at,
                    )
                    if moved:
                        result.failed += 1
                except Exception as e:
                    log.error(f"[WebhookRetry] Failed to dead-letter unroutable webhook {record.id}: {e}", exc_info=True)
                    result.errors += 1
                continue

            try:
                outcome = await self.process_webhook_retry(record, handler, claimed=True)
            except Exception as e:
                log.error(f"[WebhookRetry] Unexpected error processing webhook {record.id}: {e}", exc_info=True)
                result.errors += 1
                continue

            result.add(outcome)

        log.info(
            f"[WebhookRetry] Processed {result.processed} webhook(s): {result.succeeded} succeeded, "
            f"{result.failed} failed, {result.rescheduled} rescheduled, {result.errors} errors"
        )
        return result
