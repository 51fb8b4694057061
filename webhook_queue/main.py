"""Webhook Queue Service - FastAPI Application."""

import time
import uuid
from typing import Optional

import structlog
from fastapi import FastAPI, Request

from webhook_queue import __version__
from webhook_queue.config import Settings, get_settings
from webhook_queue.core.logging import configure_logging
from webhook_queue.core.sentry import init_sentry
from webhook_queue.lifespan import lifespan
from webhook_queue.routers import health, metrics, queue_admin

logger = structlog.get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_json)
    init_sentry(settings, component="api")

    app = FastAPI(
        title="Webhook Queue Service",
        description="Asynchronous processing queue for payment provider webhooks",
        version=__version__,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        """Bind a request ID to the log context and log completion."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        response.headers["X-Request-ID"] = request_id
        # Scrapes and probes would drown everything else
        if request.url.path not in ("/metrics", "/health"):
            logger.info(
                "Request completed",
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
        return response

    app.include_router(health.router, tags=["Health"])
    app.include_router(queue_admin.router)  # /admin/webhook-queue/*
    app.include_router(metrics.router)  # Metrics endpoint (excluded from OpenAPI)

    @app.get("/")
    async def root():
        """Root endpoint with service info."""
        return {
            "service": "Webhook Queue Service",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "webhook_queue.main:app",
        host=settings.service_host,
        port=settings.service_port,
    )
