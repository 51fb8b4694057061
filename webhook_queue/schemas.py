"""Pydantic schemas for the admin and health API."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from webhook_queue.queue.models import FailedJobInfo, QueueHealth, WebhookJob


class JobCountsResponse(BaseModel):
    """Number of jobs in each state."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


class QueueHealthResponse(BaseModel):
    """Queue health snapshot."""

    healthy: bool = Field(..., description="Ready and not paused")
    ready: bool = Field(False, description="Redis connection is ready")
    paused: bool = Field(False, description="Workers are not claiming jobs")
    jobs: Optional[JobCountsResponse] = Field(None, description="Jobs per state")
    error: Optional[str] = Field(None, description="Error message if unhealthy")

    @classmethod
    def from_health(cls, health: QueueHealth) -> "QueueHealthResponse":
        jobs = None
        if health.jobs is not None:
            jobs = JobCountsResponse(
                waiting=health.jobs.waiting,
                active=health.jobs.active,
                completed=health.jobs.completed,
                failed=health.jobs.failed,
                delayed=health.jobs.delayed,
            )
        return cls(
            healthy=health.healthy,
            ready=health.ready,
            paused=health.paused,
            jobs=jobs,
            error=health.error,
        )


class FailedJobResponse(BaseModel):
    """Diagnostic fields of a failed job."""

    id: str
    event_type: str
    event_id: str
    failed_reason: Optional[str] = None
    attempts_made: int
    timestamp: datetime
    processed_on: Optional[datetime] = None
    finished_on: Optional[datetime] = None

    @classmethod
    def from_info(cls, info: FailedJobInfo) -> "FailedJobResponse":
        return cls(
            id=info.id,
            event_type=info.event_type,
            event_id=info.event_id,
            failed_reason=info.failed_reason,
            attempts_made=info.attempts_made,
            timestamp=info.timestamp,
            processed_on=info.processed_on,
            finished_on=info.finished_on,
        )


class FailedJobsResponse(BaseModel):
    """List of failed jobs, newest first."""

    jobs: list[FailedJobResponse]
    count: int


class JobResponse(BaseModel):
    """Full job state."""

    id: str
    state: str
    priority: int
    event_type: str
    event_id: str
    webhook_db_id: Optional[str] = None
    attempts_made: int
    max_attempts: int
    stalled_count: int = 0
    failed_reason: Optional[str] = None
    return_value: Optional[Any] = None
    enqueued_at: datetime
    timestamp: datetime
    processed_on: Optional[datetime] = None
    finished_on: Optional[datetime] = None
    delay_until: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: WebhookJob) -> "JobResponse":
        return cls(
            id=job.id,
            state=job.state.value,
            priority=job.priority,
            event_type=job.event_type,
            event_id=job.event_id,
            webhook_db_id=job.event.webhook_db_id,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            stalled_count=job.stalled_count,
            failed_reason=job.failed_reason,
            return_value=job.return_value,
            enqueued_at=job.event.enqueued_at,
            timestamp=job.timestamp,
            processed_on=job.processed_on,
            finished_on=job.finished_on,
            delay_until=job.delay_until,
        )


class PauseResponse(BaseModel):
    """Result of pause/resume."""

    paused: bool


class HealthResponse(BaseModel):
    """Response for the liveness endpoint."""

    status: str = Field(..., description="ok or degraded")
    version: str = Field(..., description="Service version")
    queue: QueueHealthResponse = Field(..., description="Webhook queue health")
