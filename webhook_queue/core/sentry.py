"""Sentry initialization and configuration."""

import os
from typing import Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from webhook_queue import __version__
from webhook_queue.config import Settings

logger = structlog.get_logger(__name__)


def _before_send(event: dict, hint: dict) -> Optional[dict]:
    """
    Filter out 4xx client errors from Sentry events.

    Retrying a job that is not in the failed state (409) or asking for an
    unknown job (404) is operator error, not a service fault.
    """
    if "exc_info" in hint:
        exc_type, exc_value, tb = hint["exc_info"]
        if hasattr(exc_value, "status_code"):
            status_code = exc_value.status_code
            if 400 <= status_code < 500:
                return None

    if "contexts" in event:
        response = event.get("contexts", {}).get("response", {})
        status_code = response.get("status_code", 0)
        if 400 <= status_code < 500:
            return None

    return event


def init_sentry(settings: Settings, component: str = "api") -> bool:
    """
    Initialize Sentry if DSN is configured.

    Args:
        settings: Application settings
        component: Process role tag ("api" or "worker")

    Returns True if Sentry was initialized, False otherwise.
    """
    if not settings.sentry_dsn:
        return False

    # Only send ERROR-level logs as Sentry events
    sentry_logging = LoggingIntegration(
        level=None,
        event_level="ERROR",
    )

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        release=os.environ.get("GIT_SHA", f"webhook-queue@{__version__}"),
        integrations=[
            sentry_logging,
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        traces_sample_rate=settings.sentry_traces_sample_rate,
        send_default_pii=False,
        attach_stacktrace=True,
        before_send=_before_send,
    )

    sentry_sdk.set_tag("service", "webhook-queue")
    sentry_sdk.set_tag("component", component)
    sentry_sdk.set_tag("queue", settings.webhook_queue_name)

    logger.info(
        "Sentry initialized",
        environment=settings.sentry_environment,
        component=component,
    )

    return True
