"""Application lifespan management - startup and shutdown logic."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI

from webhook_queue import __version__
from webhook_queue.config import Settings, get_settings
from webhook_queue.queue import (
    JobProcessor,
    QueueConnectionError,
    WebhookQueue,
    load_processor,
)

logger = structlog.get_logger(__name__)


def _resolve_processor(settings: Settings) -> Optional[JobProcessor]:
    """Load the configured processor, or None for enqueue-only mode."""
    if not settings.webhook_processor:
        logger.info(
            "No webhook processor configured, running enqueue-only "
            "(start `python -m webhook_queue.worker` to process jobs)"
        )
        return None

    processor = load_processor(settings.webhook_processor)
    logger.info("Webhook processor loaded", processor=settings.webhook_processor)
    return processor


async def _init_queue(settings: Settings) -> WebhookQueue:
    """Build the webhook queue and try to connect it.

    A Redis outage at startup does not stop the service: the queue stays
    uninitialized, /health reports it and enqueue raises until restart.
    """
    queue = WebhookQueue(settings, processor=_resolve_processor(settings))
    try:
        await queue.initialize()
    except QueueConnectionError as e:
        logger.warning(
            "Webhook queue unavailable, continuing without it",
            redis_url=settings.redis_url,
            error=str(e),
        )
    return queue


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_settings()
    logger.info(
        "Starting Webhook Queue Service",
        version=__version__,
        host=settings.service_host,
        port=settings.service_port,
        queue=settings.webhook_queue_name,
        redis_url=settings.redis_url,
    )

    app.state.webhook_queue = await _init_queue(settings)

    yield

    logger.info("Shutting down Webhook Queue Service")
    queue: WebhookQueue = app.state.webhook_queue
    try:
        await queue.shutdown()
    except Exception as e:
        logger.warning("Error shutting down webhook queue", error=str(e))
