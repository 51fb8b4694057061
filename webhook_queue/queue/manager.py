"""Webhook queue manager.

Owns the Redis connection for the payment webhook queue and exposes
enqueue, introspection, manual retry and shutdown. The HTTP receiver answers
the provider immediately after enqueue(); processing happens in the worker
pool started by initialize().

Usage:
    queue = WebhookQueue(settings, processor=my_processor)
    await queue.initialize()
    await queue.enqueue(
        event_type="payment.paid",
        event_data=event["data"],
        event_id=event["id"],
        webhook_db_id=str(webhook_row_id),
    )
    ...
    await queue.shutdown()
"""

import asyncio
import inspect
import traceback
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
import structlog
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from webhook_queue.config import Settings
from webhook_queue.queue import metrics
from webhook_queue.queue.errors import (
    InvalidJobError,
    QueueConnectionError,
    QueueNotInitializedError,
)
from webhook_queue.queue.models import (
    FailedJobInfo,
    JobOptions,
    QueueHealth,
    WebhookEvent,
    WebhookJob,
)
from webhook_queue.queue.policy import event_priority
from webhook_queue.queue.processor import JobProcessor, as_processor
from webhook_queue.queue.store import JobStore
from webhook_queue.queue.types import JobState, QueueEvent
from webhook_queue.queue.worker import REDIS_UNAVAILABLE, QueueWorker

logger = structlog.get_logger(__name__)

Listener = Callable[..., Any]

READY_CHECK_MAX_WAIT_S = 30


class WebhookQueue:
    """Queue manager for payment webhook jobs.

    Listeners receive:
        ready:     ()
        error:     (error)
        failed:    (job, error)   after every failed attempt; job.state is
                                  DELAYED while retries remain, FAILED after
        completed: (job, result)
        stalled:   (job)
    """

    def __init__(
        self,
        settings: Settings,
        processor: Optional[Any] = None,
        redis: Optional[aioredis.Redis] = None,
        worker_id: Optional[str] = None,
    ):
        """
        Args:
            settings: Application settings (Redis connection + queue options)
            processor: JobProcessor or async callable; None runs the queue in
                producer-only mode (enqueue and introspection, no workers)
            redis: Pre-built client; when given the queue does not close it
            worker_id: Override for the worker identifier used in logs
        """
        self._settings = settings
        self._processor: Optional[JobProcessor] = (
            as_processor(processor) if processor is not None else None
        )
        self._redis = redis
        self._owns_redis = redis is None
        self._worker_id = worker_id
        self._options = JobOptions.from_settings(settings)

        self._store: Optional[JobStore] = None
        self._worker: Optional[QueueWorker] = None
        self._initialized = False
        self._ready = False
        self._defaults_registered = False
        self._listeners: dict[QueueEvent, list[Listener]] = defaultdict(list)
        self._lifecycle_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._settings.webhook_queue_name

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def options(self) -> JobOptions:
        return self._options

    @property
    def worker(self) -> Optional[QueueWorker]:
        return self._worker

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: QueueEvent, listener: Listener) -> Listener:
        """Register a listener (sync or async) for a queue event."""
        self._listeners[QueueEvent(event)].append(listener)
        return listener

    def off(self, event: QueueEvent, listener: Listener) -> None:
        """Remove a previously registered listener."""
        try:
            self._listeners[QueueEvent(event)].remove(listener)
        except ValueError:
            pass

    async def _emit(self, event: QueueEvent, *args: Any) -> None:
        if event == QueueEvent.READY:
            self._ready = True
        elif event == QueueEvent.ERROR:
            self._ready = False

        for listener in list(self._listeners[event]):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "queue_listener_error",
                    event=event.value,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(e),
                    traceback=traceback.format_exc(),
                )

    def _register_default_listeners(self) -> None:
        if self._defaults_registered:
            return
        self.on(QueueEvent.READY, self._log_ready)
        self.on(QueueEvent.ERROR, self._log_error)
        self.on(QueueEvent.FAILED, self._log_failed)
        self.on(QueueEvent.COMPLETED, self._log_completed)
        self.on(QueueEvent.STALLED, self._log_stalled)
        self.on(QueueEvent.READY, metrics.record_ready)
        self.on(QueueEvent.ERROR, metrics.record_error)
        self.on(QueueEvent.FAILED, metrics.record_failed)
        self.on(QueueEvent.COMPLETED, metrics.record_completed)
        self.on(QueueEvent.STALLED, metrics.record_stalled)
        self._defaults_registered = True

    def _log_ready(self) -> None:
        logger.info("queue_ready", queue=self.name)

    def _log_error(self, error: BaseException) -> None:
        logger.error("queue_error", queue=self.name, error=str(error))

    def _log_failed(self, job: WebhookJob, error: BaseException) -> None:
        logger.error(
            "job_failed",
            job_id=job.id,
            event_type=job.event_type,
            event_id=job.event_id,
            error=str(error),
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            terminal=job.state == JobState.FAILED,
        )

    def _log_completed(self, job: WebhookJob, result: Any) -> None:
        processing_ms = int(
            (datetime.now(timezone.utc) - job.timestamp).total_seconds() * 1000
        )
        logger.info(
            "job_completed",
            job_id=job.id,
            event_type=job.event_type,
            event_id=job.event_id,
            processing_time_ms=processing_ms,
        )

    def _log_stalled(self, job: WebhookJob) -> None:
        logger.warning(
            "job_stalled",
            job_id=job.id,
            event_type=job.event_type,
            stalled_count=job.stalled_count,
            will_retry=job.state != JobState.FAILED,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _create_redis(self) -> aioredis.Redis:
        settings = self._settings
        retry = Retry(
            ExponentialBackoff(
                cap=settings.redis_reconnect_backoff_cap_ms / 1000,
                base=settings.redis_reconnect_step_ms / 1000,
            ),
            retries=settings.redis_max_retries_per_request,
        )
        return aioredis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password,
            db=settings.redis_db,
            decode_responses=True,
            socket_connect_timeout=settings.redis_socket_connect_timeout_s,
            socket_keepalive=True,
            retry=retry,
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
        )

    async def _wait_until_loaded(self, redis: aioredis.Redis) -> None:
        """Block until Redis has finished loading its dataset from disk."""
        for _ in range(READY_CHECK_MAX_WAIT_S):
            info = await redis.info("persistence")
            if not int(info.get("loading", 0)):
                return
            logger.info("redis_loading_dataset", eta_s=info.get("loading_eta_seconds"))
            await asyncio.sleep(1)
        raise QueueConnectionError(
            f"Redis still loading after {READY_CHECK_MAX_WAIT_S}s"
        )

    async def initialize(self) -> "WebhookQueue":
        """Connect to Redis, register listeners and start the workers.

        Calling it again on an initialized queue is a no-op.

        Raises:
            QueueConnectionError: Redis is unreachable (caller may retry)
        """
        async with self._lifecycle_lock:
            if self._initialized:
                logger.info("queue_already_initialized", queue=self.name)
                return self

            redis = self._redis if self._redis is not None else self._create_redis()
            try:
                await redis.ping()
                if self._settings.redis_enable_ready_check:
                    await self._wait_until_loaded(redis)
            except (RedisError, OSError, QueueConnectionError) as e:
                logger.error(
                    "queue_initialize_failed",
                    queue=self.name,
                    redis_url=self._settings.redis_url,
                    error=str(e),
                )
                if self._owns_redis:
                    await redis.aclose()
                if isinstance(e, QueueConnectionError):
                    raise
                raise QueueConnectionError(
                    f"Could not connect to Redis at {self._settings.redis_url}: {e}"
                ) from e

            self._redis = redis
            self._store = JobStore(redis, self._settings.queue_key_prefix, self._options)
            self._register_default_listeners()
            self._initialized = True
            await self._emit(QueueEvent.READY)

            if self._processor is not None:
                self._worker = QueueWorker(
                    self._store,
                    self._processor,
                    self._emit,
                    concurrency=self._settings.webhook_concurrency,
                    poll_interval=self._settings.webhook_poll_interval_s,
                    reconnect_step_ms=self._settings.redis_reconnect_step_ms,
                    reconnect_cap_ms=self._settings.redis_reconnect_backoff_cap_ms,
                    worker_id=self._worker_id,
                )
                self._worker.start()

            logger.info(
                "queue_initialized",
                queue=self.name,
                processor=repr(self._processor) if self._processor else None,
                concurrency=self._settings.webhook_concurrency if self._worker else 0,
                attempts=self._options.attempts,
                backoff_delay_ms=self._options.backoff_delay_ms,
            )
            return self

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Drain in-flight jobs (bounded wait) and release the connection.

        No-op if the queue was never initialized.
        """
        async with self._lifecycle_lock:
            if not self._initialized:
                return

            timeout = (
                self._settings.webhook_shutdown_timeout_s if timeout is None else timeout
            )
            logger.info("queue_shutting_down", queue=self.name, timeout_s=timeout)

            try:
                if self._worker is not None:
                    await self._worker.stop(timeout=timeout)
                if self._owns_redis and self._redis is not None:
                    await self._redis.aclose()
                    self._redis = None
            except Exception as e:
                logger.error("queue_shutdown_error", queue=self.name, error=str(e))
                raise
            finally:
                self._worker = None
                self._store = None
                self._initialized = False
                self._ready = False

            logger.info("queue_shutdown_complete", queue=self.name)

    async def __aenter__(self) -> "WebhookQueue":
        return await self.initialize()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    def _require_store(self) -> JobStore:
        if not self._initialized or self._store is None:
            raise QueueNotInitializedError()
        return self._store

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        event_type: str,
        event_data: Any,
        event_id: str,
        webhook_db_id: Optional[str] = None,
        raw_payload: Optional[Any] = None,
    ) -> WebhookJob:
        """Add a webhook event to the processing queue.

        The provider event id is the job id, so submitting the same event
        twice returns the existing job instead of creating a second one.

        Raises:
            QueueNotInitializedError: initialize() has not been called
            InvalidJobError: event_type or event_id is empty
        """
        store = self._require_store()
        if not event_id:
            raise InvalidJobError("event_id is required (used as the job id)")
        if not event_type:
            raise InvalidJobError("event_type is required")

        if not self._ready:
            logger.warning("queue_not_ready_enqueue_anyway", event_id=event_id)

        event = WebhookEvent(
            event_type=event_type,
            event_data=event_data,
            event_id=str(event_id),
            webhook_db_id=str(webhook_db_id) if webhook_db_id is not None else None,
            raw_payload=raw_payload,
        )
        priority = event_priority(event_type)

        try:
            job, created = await store.add(event, priority)
        except REDIS_UNAVAILABLE as e:
            logger.error(
                "job_enqueue_failed",
                event_type=event_type,
                event_id=event_id,
                error=str(e),
            )
            raise

        metrics.record_enqueued(job, created)
        if created:
            logger.info(
                "job_enqueued",
                job_id=job.id,
                event_type=event_type,
                priority=priority,
            )
            if self._worker is not None:
                self._worker.wake()
        return job

    # ------------------------------------------------------------------
    # Introspection / operator API
    # ------------------------------------------------------------------

    async def get_health(self) -> QueueHealth:
        """Snapshot of readiness and per-state job counts. Never raises."""
        if not self._initialized or self._store is None:
            return QueueHealth(healthy=False, error="Queue not initialized")

        try:
            counts = await self._store.get_counts()
            paused = await self._store.is_paused()
        except Exception as e:
            return QueueHealth(healthy=False, ready=self._ready, error=str(e))

        return QueueHealth(
            healthy=self._ready and not paused,
            ready=self._ready,
            paused=paused,
            jobs=counts,
        )

    async def get_job(self, job_id: str) -> Optional[WebhookJob]:
        """Get a job by ID (None if it does not exist or was trimmed)."""
        return await self._require_store().get(job_id)

    async def retry_failed_job(self, job_id: str) -> WebhookJob:
        """Move a failed job back to waiting.

        Raises:
            JobNotFoundError: no job with this id
            JobNotFailedError: the job is not in the failed state
        """
        store = self._require_store()
        job = await store.retry(job_id)
        logger.info("job_retry_requested", job_id=job_id, event_type=job.event_type)
        if self._worker is not None:
            self._worker.wake()
        return job

    async def get_failed_jobs(self, limit: int = 20) -> list[FailedJobInfo]:
        """Most recent failed jobs, newest first. Never raises."""
        if not self._initialized or self._store is None:
            return []

        try:
            jobs = await self._store.list_jobs(JobState.FAILED, limit)
        except Exception as e:
            logger.warning("failed_jobs_query_error", error=str(e))
            return []
        return [FailedJobInfo.from_job(job) for job in jobs]

    async def pause(self) -> None:
        """Stop workers (in every process) from claiming new jobs."""
        await self._require_store().pause()
        logger.info("queue_paused", queue=self.name)

    async def resume(self) -> None:
        await self._require_store().resume()
        logger.info("queue_resumed", queue=self.name)
        if self._worker is not None:
            self._worker.wake()

    async def is_paused(self) -> bool:
        return await self._require_store().is_paused()
