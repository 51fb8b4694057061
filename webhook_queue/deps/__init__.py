"""FastAPI dependencies."""

from fastapi import HTTPException, Request, status

from webhook_queue.queue import WebhookQueue


def get_webhook_queue(request: Request) -> WebhookQueue:
    """Get the queue built by the application lifespan."""
    queue = getattr(request.app.state, "webhook_queue", None)
    if queue is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook queue not configured",
        )
    return queue
