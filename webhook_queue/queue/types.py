"""Webhook queue type definitions."""

from enum import Enum


class JobState(str, Enum):
    """Job lifecycle states.

    Every job lives in exactly one of these at any time.
    """

    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if this state is terminal (no automatic transition follows)."""
        return self in (JobState.COMPLETED, JobState.FAILED)


class QueueEvent(str, Enum):
    """Events emitted by the queue to registered listeners."""

    READY = "ready"
    ERROR = "error"
    FAILED = "failed"
    COMPLETED = "completed"
    STALLED = "stalled"


class WebhookEventType(str, Enum):
    """Payment provider event types the queue knows how to prioritize."""

    PAYMENT_PAID = "payment.paid"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_INTENT_PAYMENT_FAILED = "payment_intent.payment_failed"
    REFUND_UPDATED = "refund.updated"
