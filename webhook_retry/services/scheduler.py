from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import get_settings

if TYPE_CHECKING:
    from ..runtime import WebhookRuntime

settings = get_settings()
log = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def process_failed_webhooks(runtime: "WebhookRuntime") -> dict[str, int]:
    """Run one retry batch for every registered webhook handler."""
    try:
        result = await runtime.retry_service.process_pending_webhooks(runtime.handlers)
        if result.processed:
            log.info(f"[Scheduler] Webhook retry batch: {result.to_dict()}")
        return result.to_dict()
    except Exception as e:
        log.error(f"[Scheduler] Error processing failed webhooks: {e}", exc_info=True)
        return {}


def init_scheduler(runtime: "WebhookRuntime") -> AsyncIOScheduler:
    """Initialize and configure the scheduler."""
    global scheduler

    if scheduler is not None:
        return scheduler

    scheduler = AsyncIOScheduler(timezone=settings.TIMEZONE)

    # Replay due failed webhooks
    scheduler.add_job(
        process_failed_webhooks,
        IntervalTrigger(minutes=settings.WEBHOOK_RETRY_INTERVAL_MINUTES),
        args=[runtime],
        id="process_failed_webhooks",
        name="Retry failed webhooks",
        replace_existing=True,
        max_instances=1,
    )

    return scheduler


def start_scheduler(runtime: "WebhookRuntime"):
    """Start the scheduler."""
    global scheduler
    if scheduler is None:
        scheduler = init_scheduler(runtime)

    if not scheduler.running:
        scheduler.start()
        log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler."""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown()
        log.info("Scheduler stopped")
    scheduler = None
