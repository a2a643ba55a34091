"""Handler contract for replayed webhooks.

Handlers receive a ``WebhookContext`` rebuilt from the stored record and signal
failure by raising. Either plain functions or coroutines are accepted.
"""
from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..errors import NoHandlerRegistered
from ..models import FailedWebhookRecord

WebhookHandler = Callable[["WebhookContext"], Awaitable[None] | None]


def _load_json(value: Any) -> Any:
    # Rows written before the JSON columns existed hold serialized text
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


@dataclass(frozen=True)
class WebhookContext:
    webhook_id: int
    webhook_type: str
    body: Any
    headers: dict[str, str] = field(default_factory=dict)
    raw_body: str = ""
    attempt: int = 1

    @classmethod
    def from_record(cls, record: FailedWebhookRecord) -> "WebhookContext":
        body = _load_json(record.payload)
        headers = _load_json(record.headers) or {}
        if not isinstance(headers, dict):
            headers = {}
        raw_body = body if isinstance(body, str) else json.dumps(body)
        return cls(
            webhook_id=record.id,
            webhook_type=record.webhook_type,
            body=body,
            headers={str(k).lower(): v for k, v in headers.items()},
            raw_body=raw_body,
            attempt=record.attempt_count + 1,
        )

    def header(self, name: str, default: str | None = None) -> str | None:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower(), default)


class HandlerRegistry:
    """Maps webhook types to the handler that processes them."""

    def __init__(self, handlers: dict[str, WebhookHandler] | None = None):
        self._handlers: dict[str, WebhookHandler] = dict(handlers or {})

    def add(self, webhook_type: str, handler: WebhookHandler) -> None:
        self._handlers[webhook_type] = handler

    def register(self, webhook_type: str):
        """Decorator form of ``add``."""
        def decorator(fn: WebhookHandler) -> WebhookHandler:
            self.add(webhook_type, fn)
            return fn
        return decorator

    def get(self, webhook_type: str) -> WebhookHandler:
        try:
            return self._handlers[webhook_type]
        except KeyError:
            raise NoHandlerRegistered(webhook_type) from None

    def as_dict(self) -> dict[str, WebhookHandler]:
        return dict(self._handlers)

    def __contains__(self, webhook_type: object) -> bool:
        return webhook_type in self._handlers
