import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from webhook_retry.api import admin
from webhook_retry.config import get_settings
from webhook_retry.runtime import WebhookRuntime, build_runtime
from webhook_retry.services.scheduler import start_scheduler, stop_scheduler

# Configure logging
logging.basicConfig(level=logging.INFO)
log = logging.getLogger(__name__)

description = """
Reliability engine for inbound webhooks: failed events are stored, retried
with exponential backoff, and quarantined in a dead letter queue when they
cannot be processed.
"""

tags_metadata = [
    {"name": "admin", "description": "Dead letter queue and webhook retry tooling"},
]


def create_app(runtime: WebhookRuntime | None = None, enable_scheduler: bool | None = None) -> FastAPI:
    settings = get_settings()
    if enable_scheduler is None:
        enable_scheduler = settings.SCHEDULER_ENABLED

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the retry engine once and run the retry scheduler for the app's lifetime."""
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = build_runtime(settings=settings)

        if enable_scheduler:
            log.info("Starting background scheduler...")
            start_scheduler(app.state.runtime)
        yield
        if enable_scheduler:
            log.info("Stopping background scheduler...")
            stop_scheduler()

    app = FastAPI(
        title="Webhook Retry API",
        description=description,
        version="1.0.0",
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.include_router(admin.router)

    @app.get("/")
    def root():
        return {"message": "Webhook Retry API is running", "version": "1.0.0"}

    @app.get("/health")
    def health():
        return {"ok": True}

    return app
