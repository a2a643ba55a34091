"""Object graph for the retry engine, built once at startup."""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.engine import Engine

from .config import get_settings
from .database import get_engine
from .services.backoff import RetryPolicy
from .services.context import HandlerRegistry, WebhookHandler
from .services.dead_letter_queue import DeadLetterQueue
from .services.store import FailedWebhookStore
from .services.webhook_retry import WebhookRetryService


@dataclass
class WebhookRuntime:
    engine: Engine
    store: FailedWebhookStore
    retry_service: WebhookRetryService
    dead_letter_queue: DeadLetterQueue
    handlers: HandlerRegistry


def build_runtime(
    engine: Engine | None = None,
    settings=None,
    clock: Callable[[], datetime] | None = None,
    handlers: HandlerRegistry | dict[str, WebhookHandler] | None = None,
    policy: RetryPolicy | None = None,
) -> WebhookRuntime:
    settings = settings or get_settings()
    engine = engine or get_engine()
    if not isinstance(handlers, HandlerRegistry):
        handlers = HandlerRegistry(handlers)

    store = FailedWebhookStore(engine, clock=clock)
    retry_service = WebhookRetryService(store, policy or RetryPolicy.from_settings(settings))
    dead_letter_queue = DeadLetterQueue(store, retry_service)

    return WebhookRuntime(
        engine=engine,
        store=store,
        retry_service=retry_service,
        dead_letter_queue=dead_letter_queue,
        handlers=handlers,
    )
