"""Prometheus metrics for the webhook queue."""

from typing import Any

from prometheus_client import Counter, Gauge, Histogram

from webhook_queue.queue.models import WebhookJob
from webhook_queue.queue.types import JobState

JOBS_ENQUEUED = Counter(
    "webhook_queue_jobs_enqueued_total",
    "Webhook jobs submitted to the queue",
    ["event_type", "deduplicated"],
)

JOBS_COMPLETED = Counter(
    "webhook_queue_jobs_completed_total",
    "Webhook jobs processed successfully",
    ["event_type"],
)

JOBS_FAILED = Counter(
    "webhook_queue_jobs_failed_total",
    "Failed webhook job attempts (terminal=true once retries are exhausted)",
    ["event_type", "terminal"],
)

JOBS_STALLED = Counter(
    "webhook_queue_jobs_stalled_total",
    "Active jobs whose lock expired before they finished",
)

JOB_DURATION = Histogram(
    "webhook_queue_job_duration_seconds",
    "Time from claim to completion of a successful job",
    ["event_type"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

QUEUE_READY = Gauge(
    "webhook_queue_ready",
    "Queue connection readiness (1=ready, 0=not ready)",
)


def record_enqueued(job: WebhookJob, created: bool) -> None:
    JOBS_ENQUEUED.labels(
        event_type=job.event_type, deduplicated=str(not created).lower()
    ).inc()


def record_completed(job: WebhookJob, result: Any = None) -> None:
    JOBS_COMPLETED.labels(event_type=job.event_type).inc()
    if job.processed_on and job.finished_on:
        elapsed = (job.finished_on - job.processed_on).total_seconds()
        JOB_DURATION.labels(event_type=job.event_type).observe(max(elapsed, 0.0))


def record_failed(job: WebhookJob, error: BaseException) -> None:
    terminal = job.state == JobState.FAILED
    JOBS_FAILED.labels(event_type=job.event_type, terminal=str(terminal).lower()).inc()


def record_stalled(job: WebhookJob) -> None:
    JOBS_STALLED.inc()


def record_ready() -> None:
    QUEUE_READY.set(1)


def record_error(error: BaseException) -> None:
    QUEUE_READY.set(0)
