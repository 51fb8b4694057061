"""Queue worker - claims and executes webhook jobs from Redis."""

import asyncio
import os
import socket
import time
import traceback
from typing import Any, Awaitable, Callable, Optional

import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from webhook_queue.queue.errors import JobStalledError
from webhook_queue.queue.models import WebhookJob
from webhook_queue.queue.policy import reconnect_delay_ms
from webhook_queue.queue.processor import JobProcessor
from webhook_queue.queue.store import JobStore
from webhook_queue.queue.types import QueueEvent

logger = structlog.get_logger(__name__)

EmitFunc = Callable[..., Awaitable[None]]

REDIS_UNAVAILABLE = (RedisConnectionError, RedisTimeoutError, OSError)


def generate_worker_id() -> str:
    """Generate a unique worker ID: hostname:pid."""
    return f"{socket.gethostname()}:{os.getpid()}"


class QueueWorker:
    """Pool of asyncio tasks processing jobs from a JobStore.

    Each slot loops: promote due delayed jobs, claim the next waiting job,
    run the processor while renewing the job lock, record the outcome. A
    separate sweeper task requeues jobs whose lock expired.
    """

    def __init__(
        self,
        store: JobStore,
        processor: JobProcessor,
        emit: EmitFunc,
        concurrency: int = 1,
        poll_interval: float = 1.0,
        reconnect_step_ms: int = 1000,
        reconnect_cap_ms: int = 30000,
        worker_id: Optional[str] = None,
    ):
        self._store = store
        self._processor = processor
        self._emit = emit
        self._concurrency = concurrency
        self._poll_interval = poll_interval
        self._reconnect_step_ms = reconnect_step_ms
        self._reconnect_cap_ms = reconnect_cap_ms
        self._worker_id = worker_id or generate_worker_id()

        self._running = False
        self._slots: list[asyncio.Task] = []
        self._sweeper: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._active: set[str] = set()
        self._connection_failures = 0
        self._recoveries = 0
        self._reconnect_lock = asyncio.Lock()

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the processing slots and the stalled-job sweeper."""
        if self._running:
            return
        self._running = True
        self._slots = [
            asyncio.create_task(self._run_slot(i), name=f"webhook-worker-{i}")
            for i in range(self._concurrency)
        ]
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="webhook-stalled-sweeper")
        logger.info(
            "worker_started",
            worker_id=self._worker_id,
            concurrency=self._concurrency,
        )

    def wake(self) -> None:
        """Wake idle slots (called after a local enqueue or resume)."""
        self._wakeup.set()

    async def stop(self, timeout: float = 30.0) -> bool:
        """Stop claiming jobs and wait for in-flight jobs.

        Jobs still running after `timeout` seconds are cancelled; their locks
        expire and the next sweep requeues them.

        Returns True if every slot drained in time.
        """
        if not self._running:
            return True
        self._running = False
        self._wakeup.set()

        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None

        pending: set[asyncio.Task] = set()
        if self._slots:
            _, pending = await asyncio.wait(self._slots, timeout=timeout)
        if pending:
            logger.warning(
                "worker_drain_timeout",
                worker_id=self._worker_id,
                timeout_s=timeout,
                unfinished_jobs=sorted(self._active),
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        self._slots = []
        logger.info("worker_stopped", worker_id=self._worker_id, drained=not pending)
        return not pending

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval)
        except asyncio.TimeoutError:
            pass
        if self._running:
            self._wakeup.clear()

    async def _run_slot(self, slot: int) -> None:
        """Main loop of a single processing slot."""
        while self._running:
            try:
                if await self._store.is_paused():
                    await self._idle()
                    continue

                await self._store.promote_delayed()
                job = await self._store.claim()
                if job is None:
                    await self._idle()
                    continue

                await self._execute(job)

            except asyncio.CancelledError:
                logger.info("worker_slot_cancelled", worker_id=self._worker_id, slot=slot)
                raise
            except REDIS_UNAVAILABLE as e:
                await self._handle_connection_error(e)
            except Exception as e:
                logger.error(
                    "worker_loop_error",
                    worker_id=self._worker_id,
                    slot=slot,
                    error=str(e),
                    traceback=traceback.format_exc(),
                )
                await asyncio.sleep(self._poll_interval)

    async def _execute(self, job: WebhookJob) -> None:
        """Execute a single job and record the outcome."""
        log = logger.bind(
            job_id=job.id,
            event_type=job.event_type,
            event_id=job.event_id,
            attempt=job.attempts_made + 1,
            max_attempts=job.max_attempts,
        )
        log.info("job_processing")

        self._active.add(job.id)
        lock_task = asyncio.create_task(self._renew_lock(job.id))
        start = time.perf_counter()
        try:
            try:
                result = await self._processor.process(job.event)
            except asyncio.CancelledError:
                log.warning("job_interrupted")
                raise
            except Exception as e:
                error = str(e) or e.__class__.__name__
                outcome = await self._store.fail(job.id, error)
                if outcome is None:
                    log.warning("job_lock_lost", outcome="failed")
                    return
                failed_job, terminal = outcome
                log.warning(
                    "job_attempt_failed",
                    error=error,
                    terminal=terminal,
                    duration_s=round(time.perf_counter() - start, 3),
                )
                await self._emit(QueueEvent.FAILED, failed_job, e)
                return

            completed = await self._store.complete(job.id, result)
            if completed is None:
                log.warning("job_lock_lost", outcome="completed")
                return
            await self._emit(QueueEvent.COMPLETED, completed, result)
        finally:
            lock_task.cancel()
            await asyncio.gather(lock_task, return_exceptions=True)
            self._active.discard(job.id)

    async def _renew_lock(self, job_id: str) -> None:
        """Keep the active lock alive while the processor runs."""
        interval = self._store.options.lock_duration_ms / 2000
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self._store.extend_lock(job_id):
                    logger.warning("job_lock_renewal_failed", job_id=job_id)
                    return
            except REDIS_UNAVAILABLE as e:
                logger.warning("job_lock_renewal_error", job_id=job_id, error=str(e))

    async def _sweep_loop(self) -> None:
        """Periodically requeue jobs whose worker stopped renewing the lock."""
        interval = self._store.options.stalled_interval_ms / 1000
        while self._running:
            try:
                await self.sweep_stalled()
            except asyncio.CancelledError:
                raise
            except REDIS_UNAVAILABLE as e:
                await self._handle_connection_error(e)
            except Exception as e:
                logger.error("stalled_sweep_error", error=str(e), traceback=traceback.format_exc())
            await asyncio.sleep(interval)

    async def sweep_stalled(self) -> int:
        """Run one stalled-job check. Returns the number of jobs handled."""
        reaped = await self._store.reap_stalled()
        for job, terminal in reaped:
            await self._emit(QueueEvent.STALLED, job)
            if terminal:
                await self._emit(
                    QueueEvent.FAILED, job, JobStalledError(job.id, job.failed_reason or "")
                )
        if reaped:
            self.wake()
        return len(reaped)

    async def _handle_connection_error(self, error: Exception) -> None:
        """Back off and probe Redis until it answers again."""
        generation = self._recoveries
        async with self._reconnect_lock:
            if generation != self._recoveries:
                # Another slot already saw Redis come back
                return
            self._connection_failures += 1
            times = self._connection_failures
            await self._emit(QueueEvent.ERROR, error)

            delay = reconnect_delay_ms(times, self._reconnect_step_ms, self._reconnect_cap_ms)
            logger.warning("redis_reconnect_retry", times=times, delay_ms=delay)
            await asyncio.sleep(delay / 1000)

            try:
                await self._store.ping()
            except REDIS_UNAVAILABLE:
                return

            self._connection_failures = 0
            self._recoveries += 1
            await self._emit(QueueEvent.READY)

    def stats(self) -> dict[str, Any]:
        return {
            "worker_id": self._worker_id,
            "running": self._running,
            "concurrency": self._concurrency,
            "active_jobs": len(self._active),
        }
