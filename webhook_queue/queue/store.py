"""Redis storage for webhook queue jobs.

Key layout under ``{prefix}:{queue}``:

    job:<id>    hash   job fields (data, state, priority, attempts_made, ...)
    waiting     zset   waiting jobs, score = priority * 2**32 + sequence
    active      zset   claimed jobs, score = lock deadline (epoch ms)
    delayed     zset   jobs waiting out a retry backoff, score = run-at (epoch ms)
    completed   zset   finished jobs, score = finished_on (epoch ms)
    failed      zset   terminally failed jobs, score = finished_on (epoch ms)
    seq         string monotonically increasing enqueue sequence
    paused      string present while the queue is paused

A job id is a member of exactly one of the state sets. Every move between
sets is a WATCH/MULTI/EXEC transaction: the source set (and the job hash)
are watched, read, and the ZREM from the source set is queued in the same
EXEC as the write to the destination set. A transaction that fails or is
interrupted leaves the job where it was; a watched key changing under it
makes redis-py rerun the read step, so concurrent workers and sweepers never
apply the same transition twice.
"""

import json
import time
from typing import Any, Optional

import structlog

from webhook_queue.queue.errors import JobNotFailedError, JobNotFoundError
from webhook_queue.queue.models import (
    JobCounts,
    JobOptions,
    WebhookEvent,
    WebhookJob,
    from_epoch_ms,
)
from webhook_queue.queue.policy import PRIORITY_DEFAULT, backoff_delay_ms, should_retry
from webhook_queue.queue.types import JobState

logger = structlog.get_logger(__name__)

PRIORITY_STRIDE = 2**32
STALLED_REASON = "job stalled more than allowable limit"
PROMOTE_BATCH = 100

_STATE_SETS = (
    JobState.WAITING,
    JobState.ACTIVE,
    JobState.DELAYED,
    JobState.COMPLETED,
    JobState.FAILED,
)


def now_ms() -> int:
    return int(time.time() * 1000)


def wait_score(priority: int, seq: int) -> int:
    """Score for the wait set: priority first, then enqueue order."""
    return priority * PRIORITY_STRIDE + seq


class JobStore:
    """Repository for webhook queue state in Redis."""

    def __init__(self, redis, prefix: str, options: JobOptions):
        self._redis = redis
        self._prefix = prefix
        self._options = options

    @property
    def options(self) -> JobOptions:
        return self._options

    def _key(self, name: str) -> str:
        return f"{self._prefix}:{name}"

    def job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def state_key(self, state: JobState) -> str:
        return self._key(state.value)

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def _transaction(self, func, *watches: str):
        """Run func(pipe) under WATCH and return its value.

        func reads through the pipe in immediate mode, then calls
        pipe.multi() and queues its writes. It is rerun when a watched key
        changes before EXEC.
        """
        return await self._redis.transaction(func, *watches, value_from_callable=True)

    async def _next_seq(self) -> int:
        # A sequence number consumed by a transaction that never commits
        # only leaves a gap in the ordering.
        return await self._redis.incr(self._key("seq"))

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def add(self, event: WebhookEvent, priority: int) -> tuple[WebhookJob, bool]:
        """Create a job keyed by event.event_id.

        Returns (job, created). If a job with the same id already exists it
        is returned unchanged with created=False. The hash and its wait set
        entry are written in one EXEC.
        """
        job_id = event.event_id
        job_key = self.job_key(job_id)
        payload = json.dumps(event.to_payload(), default=str)
        seq = await self._next_seq()

        async def _add(pipe) -> tuple[WebhookJob, bool]:
            fields = await pipe.hgetall(job_key)
            if fields and "data" in fields:
                return self._hash_to_job(job_id, fields), False

            timestamp = now_ms()
            pipe.multi()
            pipe.delete(job_key)
            pipe.hset(
                job_key,
                mapping={
                    "data": payload,
                    "state": JobState.WAITING.value,
                    "priority": priority,
                    "attempts_made": 0,
                    "max_attempts": self._options.attempts,
                    "stalled_count": 0,
                    "timestamp": timestamp,
                },
            )
            pipe.zadd(self.state_key(JobState.WAITING), {job_id: wait_score(priority, seq)})
            job = WebhookJob(
                id=job_id,
                event=event,
                state=JobState.WAITING,
                priority=priority,
                max_attempts=self._options.attempts,
                timestamp=from_epoch_ms(timestamp),
            )
            return job, True

        job, created = await self._transaction(_add, job_key)
        if not created:
            logger.info(
                "job_deduplicated",
                job_id=job_id,
                event_type=event.event_type,
                state=job.state.value,
            )
        return job, created

    # ------------------------------------------------------------------
    # Worker transitions
    # ------------------------------------------------------------------

    async def claim(self) -> Optional[WebhookJob]:
        """Move the highest-priority waiting job to active.

        Returns None if no jobs are waiting.
        """
        waiting_key = self.state_key(JobState.WAITING)

        async def _claim(pipe) -> tuple[Optional[str], Optional[WebhookJob]]:
            head = await pipe.zrange(waiting_key, 0, 0)
            if not head:
                return None, None
            job_id = head[0]
            fields = await pipe.hgetall(self.job_key(job_id))

            now = now_ms()
            pipe.multi()
            pipe.zrem(waiting_key, job_id)
            if not fields or "data" not in fields:
                # Hash was removed out from under the wait set
                pipe.delete(self.job_key(job_id))
                return job_id, None

            pipe.zadd(
                self.state_key(JobState.ACTIVE),
                {job_id: now + self._options.lock_duration_ms},
            )
            pipe.hset(
                self.job_key(job_id),
                mapping={"state": JobState.ACTIVE.value, "processed_on": now},
            )
            job = self._hash_to_job(job_id, fields)
            job.state = JobState.ACTIVE
            job.processed_on = from_epoch_ms(now)
            return job_id, job

        job_id, job = await self._transaction(_claim, waiting_key)
        if job_id is None:
            return None
        if job is None:
            logger.warning("job_claim_orphaned", job_id=job_id)
            return None

        logger.debug("job_claimed", job_id=job_id, priority=job.priority)
        return job

    async def extend_lock(self, job_id: str) -> bool:
        """Push the active lock deadline forward. False if the lock is gone."""
        key = self.state_key(JobState.ACTIVE)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {job_id: now_ms() + self._options.lock_duration_ms}, xx=True)
            pipe.zscore(key, job_id)
            _, score = await pipe.execute()
        return score is not None

    async def _load_active(self, pipe, job_id: str) -> Optional[WebhookJob]:
        """Read an active job inside a transaction. None if not held."""
        if await pipe.zscore(self.state_key(JobState.ACTIVE), job_id) is None:
            return None
        fields = await pipe.hgetall(self.job_key(job_id))
        if not fields or "data" not in fields:
            return None
        return self._hash_to_job(job_id, fields)

    async def complete(self, job_id: str, return_value: Any = None) -> Optional[WebhookJob]:
        """Mark an active job as completed.

        Returns None if this caller no longer owns the job (lock lost).
        """
        active_key = self.state_key(JobState.ACTIVE)

        async def _complete(pipe) -> Optional[WebhookJob]:
            job = await self._load_active(pipe, job_id)
            if job is None:
                return None

            finished = now_ms()
            encoded = json.dumps(return_value, default=str)
            pipe.multi()
            pipe.zrem(active_key, job_id)
            pipe.hset(
                self.job_key(job_id),
                mapping={
                    "state": JobState.COMPLETED.value,
                    "finished_on": finished,
                    "return_value": encoded,
                },
            )
            pipe.hdel(self.job_key(job_id), "delay_until")
            pipe.zadd(self.state_key(JobState.COMPLETED), {job_id: finished})
            job.state = JobState.COMPLETED
            job.finished_on = from_epoch_ms(finished)
            job.delay_until = None
            job.return_value = json.loads(encoded)
            return job

        job = await self._transaction(_complete, active_key, self.job_key(job_id))
        if job is not None:
            await self._trim(JobState.COMPLETED, self._options.remove_on_complete)
        return job

    async def fail(self, job_id: str, error: str) -> Optional[tuple[WebhookJob, bool]]:
        """Record a failed attempt for an active job.

        Schedules a delayed retry while attempts remain, otherwise moves the
        job to the failed set. Returns (job, terminal), or None if the lock
        was lost.
        """
        active_key = self.state_key(JobState.ACTIVE)

        async def _fail(pipe) -> Optional[tuple[WebhookJob, bool, int]]:
            job = await self._load_active(pipe, job_id)
            if job is None:
                return None

            job.attempts_made += 1
            job.failed_reason = error
            terminal = not should_retry(job.attempts_made, job.max_attempts)
            delay = 0

            pipe.multi()
            pipe.zrem(active_key, job_id)
            if terminal:
                self._queue_failed(pipe, job)
            else:
                delay = backoff_delay_ms(job.attempts_made, self._options.backoff_delay_ms)
                run_at = now_ms() + delay
                pipe.hset(
                    self.job_key(job_id),
                    mapping={
                        "state": JobState.DELAYED.value,
                        "attempts_made": job.attempts_made,
                        "failed_reason": error,
                        "delay_until": run_at,
                    },
                )
                pipe.zadd(self.state_key(JobState.DELAYED), {job_id: run_at})
                job.state = JobState.DELAYED
                job.delay_until = from_epoch_ms(run_at)
            return job, terminal, delay

        outcome = await self._transaction(_fail, active_key, self.job_key(job_id))
        if outcome is None:
            return None

        job, terminal, delay = outcome
        if terminal:
            await self._trim(JobState.FAILED, self._options.remove_on_fail)
        else:
            logger.info(
                "job_retry_scheduled",
                job_id=job_id,
                attempt=job.attempts_made,
                backoff_ms=delay,
            )
        return job, terminal

    def _queue_failed(self, pipe, job: WebhookJob) -> None:
        """Queue the writes that put a job in the failed set."""
        finished = now_ms()
        pipe.hset(
            self.job_key(job.id),
            mapping={
                "state": JobState.FAILED.value,
                "attempts_made": job.attempts_made,
                "stalled_count": job.stalled_count,
                "failed_reason": job.failed_reason or "",
                "finished_on": finished,
            },
        )
        pipe.hdel(self.job_key(job.id), "delay_until")
        pipe.zadd(self.state_key(JobState.FAILED), {job.id: finished})
        job.state = JobState.FAILED
        job.finished_on = from_epoch_ms(finished)
        job.delay_until = None

    def _queue_requeue(
        self,
        pipe,
        job_id: str,
        priority: int,
        seq: int,
        fields: dict[str, Any],
        clear: tuple[str, ...] = (),
    ) -> None:
        """Queue the writes that put a job back in the wait set."""
        pipe.hset(
            self.job_key(job_id),
            mapping={"state": JobState.WAITING.value, **fields},
        )
        if clear:
            pipe.hdel(self.job_key(job_id), *clear)
        pipe.zadd(self.state_key(JobState.WAITING), {job_id: wait_score(priority, seq)})

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def promote_delayed(self, now: Optional[int] = None) -> int:
        """Move delayed jobs whose backoff has elapsed back to waiting."""
        now = now if now is not None else now_ms()
        delayed_key = self.state_key(JobState.DELAYED)
        due = await self._redis.zrangebyscore(
            delayed_key, "-inf", now, start=0, num=PROMOTE_BATCH
        )
        promoted = 0
        for job_id in due:
            seq = await self._next_seq()

            async def _promote(pipe, job_id=job_id, seq=seq) -> bool:
                score = await pipe.zscore(delayed_key, job_id)
                if score is None or score > now:
                    return False
                priority = await pipe.hget(self.job_key(job_id), "priority")
                priority = int(priority) if priority is not None else PRIORITY_DEFAULT
                pipe.multi()
                pipe.zrem(delayed_key, job_id)
                self._queue_requeue(pipe, job_id, priority, seq, {}, clear=("delay_until",))
                return True

            if await self._transaction(_promote, delayed_key):
                promoted += 1

        if promoted:
            logger.debug("delayed_jobs_promoted", count=promoted)
        return promoted

    async def reap_stalled(self, now: Optional[int] = None) -> list[tuple[WebhookJob, bool]]:
        """Requeue or fail active jobs whose lock has expired.

        A stalled restart counts as an attempt. Returns (job, terminal) for
        every job handled.
        """
        now = now if now is not None else now_ms()
        active_key = self.state_key(JobState.ACTIVE)
        expired = await self._redis.zrangebyscore(active_key, "-inf", now)
        reaped: list[tuple[WebhookJob, bool]] = []
        for job_id in expired:
            seq = await self._next_seq()

            async def _reap(pipe, job_id=job_id, seq=seq) -> Optional[tuple[WebhookJob, bool]]:
                deadline = await pipe.zscore(active_key, job_id)
                if deadline is None or deadline > now:
                    # Finished or renewed since the scan
                    return None
                fields = await pipe.hgetall(self.job_key(job_id))
                pipe.multi()
                pipe.zrem(active_key, job_id)
                if not fields or "data" not in fields:
                    return None

                job = self._hash_to_job(job_id, fields)
                job.stalled_count += 1
                job.attempts_made += 1
                terminal = job.stalled_count > self._options.max_stalled_count or not should_retry(
                    job.attempts_made, job.max_attempts
                )
                if terminal:
                    job.failed_reason = STALLED_REASON
                    self._queue_failed(pipe, job)
                else:
                    self._queue_requeue(
                        pipe,
                        job_id,
                        job.priority,
                        seq,
                        {
                            "stalled_count": job.stalled_count,
                            "attempts_made": job.attempts_made,
                        },
                    )
                    job.state = JobState.WAITING
                return job, terminal

            outcome = await self._transaction(_reap, active_key, self.job_key(job_id))
            if outcome is not None:
                reaped.append(outcome)

        if any(terminal for _, terminal in reaped):
            await self._trim(JobState.FAILED, self._options.remove_on_fail)
        if reaped:
            logger.warning("stalled_jobs_reaped", count=len(reaped))
        return reaped

    async def _trim(self, state: JobState, keep: int) -> int:
        """Drop the oldest jobs of a history set beyond `keep` entries."""
        key = self.state_key(state)
        count = await self._redis.zcard(key)
        excess = count - keep
        if excess <= 0:
            return 0

        stale_ids = await self._redis.zrange(key, 0, excess - 1)
        if not stale_ids:
            return 0
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(key, *stale_ids)
            pipe.delete(*[self.job_key(job_id) for job_id in stale_ids])
            await pipe.execute()
        return len(stale_ids)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def retry(self, job_id: str) -> WebhookJob:
        """Move a failed job back to waiting with a fresh attempt budget.

        Raises JobNotFoundError or JobNotFailedError.
        """
        failed_key = self.state_key(JobState.FAILED)
        seq = await self._next_seq()

        async def _retry(pipe) -> WebhookJob:
            in_failed = await pipe.zscore(failed_key, job_id) is not None
            fields = await pipe.hgetall(self.job_key(job_id))
            if not fields or "data" not in fields:
                raise JobNotFoundError(job_id)
            job = self._hash_to_job(job_id, fields)
            if not in_failed:
                raise JobNotFailedError(job_id, job.state.value)

            pipe.multi()
            pipe.zrem(failed_key, job_id)
            self._queue_requeue(
                pipe,
                job_id,
                job.priority,
                seq,
                {"attempts_made": 0, "stalled_count": 0},
                clear=("failed_reason", "finished_on", "processed_on", "delay_until"),
            )
            job.state = JobState.WAITING
            job.attempts_made = 0
            job.stalled_count = 0
            job.failed_reason = None
            job.finished_on = None
            job.processed_on = None
            job.delay_until = None
            return job

        return await self._transaction(_retry, failed_key, self.job_key(job_id))

    async def pause(self) -> None:
        await self._redis.set(self._key("paused"), "1")

    async def resume(self) -> None:
        await self._redis.delete(self._key("paused"))

    async def is_paused(self) -> bool:
        return bool(await self._redis.exists(self._key("paused")))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, job_id: str) -> Optional[WebhookJob]:
        """Get a job by ID."""
        fields = await self._redis.hgetall(self.job_key(job_id))
        if not fields or "data" not in fields:
            return None
        return self._hash_to_job(job_id, fields)

    async def get_counts(self) -> JobCounts:
        """Count jobs per state in a single MULTI/EXEC snapshot."""
        async with self._redis.pipeline(transaction=True) as pipe:
            for state in _STATE_SETS:
                pipe.zcard(self.state_key(state))
            results = await pipe.execute()
        counts = dict(zip(_STATE_SETS, results))
        return JobCounts(
            waiting=counts[JobState.WAITING],
            active=counts[JobState.ACTIVE],
            completed=counts[JobState.COMPLETED],
            failed=counts[JobState.FAILED],
            delayed=counts[JobState.DELAYED],
        )

    async def list_jobs(self, state: JobState, limit: int = 20) -> list[WebhookJob]:
        """List jobs in a state.

        History sets (completed, failed) are newest first; the wait set is in
        dequeue order; active and delayed are soonest deadline first.
        """
        if limit <= 0:
            return []
        key = self.state_key(state)
        if state.is_terminal:
            job_ids = await self._redis.zrevrange(key, 0, limit - 1)
        else:
            job_ids = await self._redis.zrange(key, 0, limit - 1)

        jobs = []
        for job_id in job_ids:
            job = await self.get(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    def _hash_to_job(self, job_id: str, fields: dict[str, str]) -> WebhookJob:
        """Convert a Redis job hash to a WebhookJob model."""

        def _int(name: str, default: Optional[int] = None) -> Optional[int]:
            value = fields.get(name)
            if value is None or value == "":
                return default
            return int(value)

        return_value = fields.get("return_value")
        return WebhookJob(
            id=job_id,
            event=WebhookEvent.from_payload(json.loads(fields["data"])),
            state=JobState(fields.get("state", JobState.WAITING.value)),
            priority=_int("priority", PRIORITY_DEFAULT),
            attempts_made=_int("attempts_made", 0),
            max_attempts=_int("max_attempts", self._options.attempts),
            stalled_count=_int("stalled_count", 0),
            failed_reason=fields.get("failed_reason") or None,
            return_value=json.loads(return_value) if return_value else None,
            timestamp=from_epoch_ms(_int("timestamp", now_ms())),
            processed_on=from_epoch_ms(_int("processed_on")),
            finished_on=from_epoch_ms(_int("finished_on")),
            delay_until=from_epoch_ms(_int("delay_until")),
        )
