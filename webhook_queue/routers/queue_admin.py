"""Admin endpoints for webhook queue inspection and manual retry."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from webhook_queue.deps import get_webhook_queue
from webhook_queue.deps.security import require_admin_token
from webhook_queue.queue import (
    JobNotFailedError,
    JobNotFoundError,
    QueueNotInitializedError,
    WebhookQueue,
)
from webhook_queue.schemas import (
    FailedJobResponse,
    FailedJobsResponse,
    JobResponse,
    PauseResponse,
    QueueHealthResponse,
)

router = APIRouter(
    prefix="/admin/webhook-queue",
    tags=["webhook-queue"],
    dependencies=[Depends(require_admin_token)],
)
logger = structlog.get_logger(__name__)


def _not_initialized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Webhook queue not initialized",
    )


@router.get("/health", response_model=QueueHealthResponse)
async def queue_health(queue: WebhookQueue = Depends(get_webhook_queue)) -> QueueHealthResponse:
    """Readiness, paused flag and job counts per state."""
    health = await queue.get_health()
    return QueueHealthResponse.from_health(health)


@router.get("/failed", response_model=FailedJobsResponse)
async def list_failed_jobs(
    limit: int = Query(20, ge=1, le=500, description="Max jobs to return"),
    queue: WebhookQueue = Depends(get_webhook_queue),
) -> FailedJobsResponse:
    """Most recent terminally failed jobs, newest first."""
    failed = await queue.get_failed_jobs(limit)
    jobs = [FailedJobResponse.from_info(info) for info in failed]
    return FailedJobsResponse(jobs=jobs, count=len(jobs))


@router.get(
    "/jobs/{job_id}",
    response_model=JobResponse,
    responses={404: {"description": "Job not found"}},
)
async def get_job(job_id: str, queue: WebhookQueue = Depends(get_webhook_queue)) -> JobResponse:
    """Get the full state of a job."""
    try:
        job = await queue.get_job(job_id)
    except QueueNotInitializedError:
        raise _not_initialized()

    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        )
    return JobResponse.from_job(job)


@router.post(
    "/jobs/{job_id}/retry",
    response_model=JobResponse,
    responses={
        404: {"description": "Job not found"},
        409: {"description": "Job is not in failed state"},
    },
)
async def retry_job(job_id: str, queue: WebhookQueue = Depends(get_webhook_queue)) -> JobResponse:
    """Requeue a failed job with a fresh attempt budget."""
    try:
        job = await queue.retry_failed_job(job_id)
    except QueueNotInitializedError:
        raise _not_initialized()
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except JobNotFailedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    logger.info("Admin retried webhook job", job_id=job_id)
    return JobResponse.from_job(job)


@router.post("/pause", response_model=PauseResponse)
async def pause_queue(queue: WebhookQueue = Depends(get_webhook_queue)) -> PauseResponse:
    """Stop all workers from claiming new jobs."""
    try:
        await queue.pause()
    except QueueNotInitializedError:
        raise _not_initialized()
    return PauseResponse(paused=True)


@router.post("/resume", response_model=PauseResponse)
async def resume_queue(queue: WebhookQueue = Depends(get_webhook_queue)) -> PauseResponse:
    """Let workers claim jobs again."""
    try:
        await queue.resume()
    except QueueNotInitializedError:
        raise _not_initialized()
    return PauseResponse(paused=False)
