"""Webhook queue data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from webhook_queue.queue.types import JobState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_epoch_ms(ms: Optional[int]) -> Optional[datetime]:
    """Convert epoch milliseconds to an aware UTC datetime."""
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


@dataclass
class WebhookEvent:
    """The payload of a job: one payment provider event."""

    event_type: str
    event_data: Any
    event_id: str
    webhook_db_id: Optional[str] = None
    raw_payload: Optional[Any] = None
    enqueued_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "eventType": self.event_type,
            "eventData": self.event_data,
            "eventId": self.event_id,
            "webhookDbId": self.webhook_db_id,
            "rawPayload": self.raw_payload,
            "enqueuedAt": self.enqueued_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "WebhookEvent":
        """Build an event from its serialized form."""
        enqueued_at = payload.get("enqueuedAt")
        return cls(
            event_type=payload["eventType"],
            event_data=payload.get("eventData"),
            event_id=payload["eventId"],
            webhook_db_id=payload.get("webhookDbId"),
            raw_payload=payload.get("rawPayload"),
            enqueued_at=(
                datetime.fromisoformat(enqueued_at) if enqueued_at else utcnow()
            ),
        )


@dataclass
class WebhookJob:
    """A job in the webhook queue."""

    id: str
    event: WebhookEvent
    state: JobState
    priority: int

    # Retry handling
    attempts_made: int = 0
    max_attempts: int = 3
    stalled_count: int = 0
    failed_reason: Optional[str] = None

    # Result (populated on completion)
    return_value: Optional[Any] = None

    # Lifecycle timestamps
    timestamp: datetime = field(default_factory=utcnow)
    processed_on: Optional[datetime] = None
    finished_on: Optional[datetime] = None
    delay_until: Optional[datetime] = None

    @property
    def event_type(self) -> str:
        return self.event.event_type

    @property
    def event_id(self) -> str:
        return self.event.event_id


@dataclass
class JobCounts:
    """Number of jobs in each state."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed


@dataclass
class QueueHealth:
    """Point-in-time health snapshot of the queue."""

    healthy: bool
    ready: bool = False
    paused: bool = False
    jobs: Optional[JobCounts] = None
    error: Optional[str] = None


@dataclass
class FailedJobInfo:
    """Diagnostic view of a job in the failed set."""

    id: str
    event_type: str
    event_id: str
    failed_reason: Optional[str]
    attempts_made: int
    timestamp: datetime
    processed_on: Optional[datetime] = None
    finished_on: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: WebhookJob) -> "FailedJobInfo":
        return cls(
            id=job.id,
            event_type=job.event_type,
            event_id=job.event_id,
            failed_reason=job.failed_reason,
            attempts_made=job.attempts_made,
            timestamp=job.timestamp,
            processed_on=job.processed_on,
            finished_on=job.finished_on,
        )


@dataclass(frozen=True)
class JobOptions:
    """Queue-wide job and worker options (all durations in milliseconds)."""

    attempts: int = 3
    backoff_delay_ms: int = 5000
    remove_on_complete: int = 100
    remove_on_fail: int = 500
    lock_duration_ms: int = 30000
    stalled_interval_ms: int = 30000
    max_stalled_count: int = 2

    @classmethod
    def from_settings(cls, settings) -> "JobOptions":
        return cls(
            attempts=settings.webhook_job_attempts,
            backoff_delay_ms=settings.webhook_backoff_delay_ms,
            remove_on_complete=settings.webhook_remove_on_complete,
            remove_on_fail=settings.webhook_remove_on_fail,
            lock_duration_ms=settings.webhook_lock_duration_ms,
            stalled_interval_ms=settings.webhook_stalled_interval_ms,
            max_stalled_count=settings.webhook_max_stalled_count,
        )
