"""Health check endpoint."""

import structlog
from fastapi import APIRouter, Request

from webhook_queue import __version__
from webhook_queue.schemas import HealthResponse, QueueHealthResponse
from webhook_queue.queue import QueueHealth

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """
    Check health of the service and its webhook queue.

    Always answers 200; `status` is "degraded" when the queue is not ready,
    paused, or unreachable.
    """
    queue = getattr(request.app.state, "webhook_queue", None)
    if queue is None:
        queue_health = QueueHealth(healthy=False, error="Queue not configured")
    else:
        queue_health = await queue.get_health()

    overall_status = "ok" if queue_health.healthy else "degraded"
    if overall_status != "ok":
        logger.warning("Health check degraded", error=queue_health.error)

    return HealthResponse(
        status=overall_status,
        version=__version__,
        queue=QueueHealthResponse.from_health(queue_health),
    )
