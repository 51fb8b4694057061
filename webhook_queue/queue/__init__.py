"""Webhook job queue package."""

from webhook_queue.queue.errors import (
    InvalidJobError,
    JobNotFailedError,
    JobNotFoundError,
    QueueConnectionError,
    QueueNotInitializedError,
    WebhookQueueError,
)
from webhook_queue.queue.manager import WebhookQueue
from webhook_queue.queue.models import (
    FailedJobInfo,
    JobCounts,
    QueueHealth,
    WebhookEvent,
    WebhookJob,
)
from webhook_queue.queue.policy import event_priority
from webhook_queue.queue.processor import JobProcessor, as_processor, load_processor
from webhook_queue.queue.types import JobState, QueueEvent, WebhookEventType

__all__ = [
    "WebhookQueue",
    "WebhookEvent",
    "WebhookJob",
    "JobCounts",
    "QueueHealth",
    "FailedJobInfo",
    "JobState",
    "QueueEvent",
    "WebhookEventType",
    "JobProcessor",
    "as_processor",
    "load_processor",
    "event_priority",
    "WebhookQueueError",
    "QueueConnectionError",
    "QueueNotInitializedError",
    "InvalidJobError",
    "JobNotFoundError",
    "JobNotFailedError",
]
