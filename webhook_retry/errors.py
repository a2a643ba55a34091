"""Exceptions raised by the webhook retry engine."""


class WebhookRetryError(Exception):
    """Base class for retry engine errors."""


class WebhookNotInDeadLetterQueue(WebhookRetryError, LookupError):
    def __init__(self, webhook_id: int):
        self.webhook_id = webhook_id
        super().__init__(f"Webhook {webhook_id} not found in dead letter queue")


class NoHandlerRegistered(WebhookRetryError, KeyError):
    def __init__(self, webhook_type: str):
        self.webhook_type = webhook_type
        super().__init__(webhook_type)

    def __str__(self) -> str:
        return f"No handler registered for webhook type: {self.webhook_type}"


class HandlerTimeout(WebhookRetryError, TimeoutError):
    def __init__(self, webhook_id: int, timeout_seconds: float):
        self.webhook_id = webhook_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Handler for webhook {webhook_id} timed out after {timeout_seconds}s")
