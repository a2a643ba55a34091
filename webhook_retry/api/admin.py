"""Administrative endpoints for failed webhooks and the dead letter queue"""
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from webhook_retry.api.auth import verify_admin_api_key
from webhook_retry.errors import NoHandlerRegistered, WebhookNotInDeadLetterQueue
from webhook_retry.runtime import WebhookRuntime

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/admin",
    tags=["admin"],
    dependencies=[Depends(verify_admin_api_key)]
)


def get_runtime(request: Request) -> WebhookRuntime:
    return request.app.state.runtime


class DeadLetterQueueResponse(BaseModel):
    success: bool = True
    webhooks: list[dict[str, Any]]
    count: int
    limit: int
    offset: int


class StatisticsResponse(BaseModel):
    success: bool = True
    statistics: dict[str, Any]


class ActionResponse(BaseModel):
    success: bool = True
    message: str
    result: dict[str, Any] | None = None


@router.get("/dlq", response_model=DeadLetterQueueResponse)
def get_dead_letter_queue(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    webhook_type: str | None = None,
    runtime: WebhookRuntime = Depends(get_runtime),
):
    """List permanently failed webhooks"""
    dlq = runtime.dead_letter_queue
    webhooks = dlq.get_dead_letter_queue(limit=limit, offset=offset, webhook_type=webhook_type)
    count = dlq.get_dead_letter_queue_count(webhook_type)

    return DeadLetterQueueResponse(
        webhooks=[w.to_dict() for w in webhooks],
        count=count,
        limit=limit,
        offset=offset,
    )


@router.get("/webhooks/stats", response_model=StatisticsResponse)
def get_webhook_statistics(runtime: WebhookRuntime = Depends(get_runtime)):
    """Webhook counts by status and type"""
    return StatisticsResponse(statistics=runtime.dead_letter_queue.get_webhook_statistics())


@router.post("/dlq/{webhook_id}/replay", response_model=ActionResponse)
async def replay_webhook(webhook_id: int, runtime: WebhookRuntime = Depends(get_runtime)):
    """Reset a dead-lettered webhook and process it immediately"""
    webhook = runtime.store.get(webhook_id)
    if webhook is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook not found"
        )

    if webhook.webhook_type not in runtime.handlers:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(NoHandlerRegistered(webhook.webhook_type))
        )
    handler = runtime.handlers.get(webhook.webhook_type)

    try:
        result = await runtime.dead_letter_queue.replay_webhook(webhook_id, handler)
    except WebhookNotInDeadLetterQueue as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )

    return ActionResponse(message="Webhook replayed", result=result.to_dict())


@router.delete("/dlq/{webhook_id}", response_model=ActionResponse)
def delete_from_dead_letter_queue(webhook_id: int, runtime: WebhookRuntime = Depends(get_runtime)):
    """Permanently delete a dead-lettered webhook"""
    if not runtime.dead_letter_queue.delete_from_dead_letter_queue(webhook_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Webhook {webhook_id} not found in dead letter queue"
        )

    return ActionResponse(message="Webhook deleted from dead letter queue")


@router.post("/webhooks/retry/process", response_model=ActionResponse)
async def process_webhook_retries(runtime: WebhookRuntime = Depends(get_runtime)):
    """Run one retry batch now instead of waiting for the scheduler"""
    result = await runtime.retry_service.process_pending_webhooks(runtime.handlers)
    log.info(f"[Admin] Manual webhook retry run: {result.to_dict()}")
    return ActionResponse(message="Webhook retry processing completed", result=result.to_dict())
