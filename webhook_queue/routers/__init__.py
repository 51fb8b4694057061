"""API routers."""

from webhook_queue.routers import health, metrics, queue_admin

__all__ = ["health", "metrics", "queue_admin"]
