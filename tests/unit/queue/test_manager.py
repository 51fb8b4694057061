"""Tests for the webhook queue manager."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from webhook_queue.queue import (
    InvalidJobError,
    JobNotFailedError,
    JobNotFoundError,
    JobState,
    QueueConnectionError,
    QueueEvent,
    QueueNotInitializedError,
    WebhookQueue,
)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class RecordingProcessor:
    """Processor that records events and fails while `error` is set."""

    def __init__(self, error: Exception = None):
        self.error = error
        self.events = []

    async def process(self, event):
        self.events.append(event)
        if self.error is not None:
            raise self.error
        return {"processed": event.event_id}


@pytest.fixture
async def queue_factory(settings, fake_redis):
    """Build queues on the fake Redis and shut them all down afterwards."""
    created = []

    def _make(processor=None, **kwargs) -> WebhookQueue:
        queue = WebhookQueue(
            kwargs.pop("settings", settings), processor=processor, redis=fake_redis, **kwargs
        )
        created.append(queue)
        return queue

    yield _make

    for queue in created:
        await queue.shutdown(timeout=1)


class TestInitialize:
    @pytest.mark.asyncio
    async def test_initialize_marks_ready_and_starts_worker(self, queue_factory):
        queue = queue_factory(RecordingProcessor())

        result = await queue.initialize()

        assert result is queue
        assert queue.is_initialized
        assert queue.is_ready
        assert queue.worker is not None
        assert queue.worker.running

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, queue_factory):
        queue = queue_factory(RecordingProcessor())
        ready = MagicMock()
        queue.on(QueueEvent.READY, ready)

        await queue.initialize()
        worker = queue.worker
        await queue.initialize()

        assert queue.worker is worker
        ready.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_without_processor_runs_producer_only(self, queue_factory):
        queue = queue_factory()
        await queue.initialize()

        assert queue.worker is None
        job = await queue.enqueue("payment.paid", {}, "evt_123")
        assert job.state == JobState.WAITING

    @pytest.mark.asyncio
    async def test_unreachable_redis_raises_connection_error(self, queue_factory, fake_redis):
        fake_redis.error = RedisConnectionError("Connection refused")
        queue = queue_factory(RecordingProcessor())

        with pytest.raises(QueueConnectionError, match="Could not connect to Redis"):
            await queue.initialize()

        assert not queue.is_initialized
        assert not queue.is_ready
        # Injected clients belong to the caller
        assert fake_redis.closed is False

    @pytest.mark.asyncio
    async def test_owned_client_closed_when_initialize_fails(self, settings, fake_redis):
        fake_redis.error = RedisConnectionError("Connection refused")
        queue = WebhookQueue(settings)

        with patch.object(WebhookQueue, "_create_redis", return_value=fake_redis):
            with pytest.raises(QueueConnectionError):
                await queue.initialize()

        assert fake_redis.closed is True

    @pytest.mark.asyncio
    async def test_ready_check_waits_for_dataset(self, settings_factory, fake_redis):
        queue = WebhookQueue(
            settings_factory(redis_enable_ready_check=True), redis=fake_redis
        )
        await queue.initialize()
        assert queue.is_ready
        await queue.shutdown()


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_before_initialize(self, queue_factory):
        queue = queue_factory()

        with pytest.raises(QueueNotInitializedError, match="Call initialize"):
            await queue.enqueue("payment.paid", {}, "evt_123")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event_type,event_id",
        [("payment.paid", ""), ("payment.paid", None), ("", "evt_123")],
    )
    async def test_missing_fields_rejected(self, queue_factory, event_type, event_id):
        queue = queue_factory()
        await queue.initialize()

        with pytest.raises(InvalidJobError):
            await queue.enqueue(event_type, {}, event_id)

    @pytest.mark.asyncio
    async def test_job_id_and_priority(self, queue_factory):
        queue = queue_factory()
        await queue.initialize()

        job = await queue.enqueue(
            event_type="payment.failed",
            event_data={"id": "pay_1"},
            event_id="evt_789",
            webhook_db_id=17,
            raw_payload={"data": {}},
        )

        assert job.id == "evt_789"
        assert job.priority == 2
        assert job.event.webhook_db_id == "17"
        assert job.event.raw_payload == {"data": {}}

    @pytest.mark.asyncio
    async def test_duplicate_event_is_not_enqueued_twice(self, queue_factory):
        queue = queue_factory()
        await queue.initialize()

        first = await queue.enqueue("payment.paid", {}, "evt_123")
        second = await queue.enqueue("payment.paid", {}, "evt_123")

        assert second.id == first.id
        health = await queue.get_health()
        assert health.jobs.waiting == 1

    @pytest.mark.asyncio
    async def test_redis_failure_propagates(self, queue_factory, fake_redis):
        queue = queue_factory()
        await queue.initialize()
        fake_redis.error = RedisConnectionError("Connection reset")

        with pytest.raises(RedisConnectionError):
            await queue.enqueue("payment.paid", {}, "evt_123")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("command", ["incr", "execute"])
    async def test_interrupted_enqueue_can_be_resent(self, queue_factory, fake_redis, command):
        queue = queue_factory()
        await queue.initialize()
        fake_redis.fail_next(command, RedisConnectionError("Connection reset"))

        with pytest.raises(RedisConnectionError):
            await queue.enqueue("payment.paid", {}, "evt_ghost")
        assert await queue.get_job("evt_ghost") is None

        # Provider resends after the 5xx
        job = await queue.enqueue("payment.paid", {}, "evt_ghost")

        assert job.state == JobState.WAITING
        health = await queue.get_health()
        assert health.jobs.waiting == 1


class TestHealth:
    @pytest.mark.asyncio
    async def test_uninitialized(self, queue_factory):
        health = await queue_factory().get_health()

        assert health.healthy is False
        assert health.error == "Queue not initialized"
        assert health.jobs is None

    @pytest.mark.asyncio
    async def test_ready_queue_reports_counts(self, queue_factory):
        queue = queue_factory()
        await queue.initialize()
        await queue.enqueue("payment.paid", {}, "evt_1")
        await queue.enqueue("refund.updated", {}, "evt_2")

        health = await queue.get_health()

        assert health.healthy is True
        assert health.ready is True
        assert health.paused is False
        assert health.jobs.waiting == 2
        assert health.jobs.failed == 0

    @pytest.mark.asyncio
    async def test_paused_queue_is_unhealthy(self, queue_factory):
        queue = queue_factory()
        await queue.initialize()
        await queue.pause()

        health = await queue.get_health()

        assert health.healthy is False
        assert health.paused is True
        assert await queue.is_paused() is True

        await queue.resume()
        assert (await queue.get_health()).healthy is True

    @pytest.mark.asyncio
    async def test_redis_error_is_reported_not_raised(self, queue_factory, fake_redis):
        queue = queue_factory()
        await queue.initialize()
        fake_redis.error = RedisConnectionError("Connection refused")

        health = await queue.get_health()

        assert health.healthy is False
        assert "Connection refused" in health.error

    @pytest.mark.asyncio
    async def test_error_event_marks_not_ready(self, queue_factory):
        queue = queue_factory()
        await queue.initialize()

        await queue._emit(QueueEvent.ERROR, RedisConnectionError("gone"))

        assert queue.is_ready is False
        assert (await queue.get_health()).healthy is False

        await queue._emit(QueueEvent.READY)
        assert (await queue.get_health()).healthy is True


class TestProcessing:
    @pytest.mark.asyncio
    async def test_successful_payment_event(self, queue_factory):
        processor = RecordingProcessor()
        queue = queue_factory(processor)
        completed = []
        queue.on(QueueEvent.COMPLETED, lambda job, result: completed.append((job, result)))
        await queue.initialize()

        await queue.enqueue(
            event_type="payment.paid",
            event_data={"id": "pay_1", "attributes": {"amount": 10000}},
            event_id="evt_123",
            webhook_db_id="1",
        )

        async def done():
            return len(completed) == 1

        await wait_until(done)
        job, result = completed[0]
        assert job.id == "evt_123"
        assert job.state == JobState.COMPLETED
        assert result == {"processed": "evt_123"}
        assert processor.events[0].event_data["attributes"]["amount"] == 10000
        assert (await queue.get_job("evt_123")).state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_failing_event_retried_then_failed(self, queue_factory):
        processor = RecordingProcessor(error=RuntimeError("DB connection lost"))
        queue = queue_factory(processor)
        failures = []
        queue.on(QueueEvent.FAILED, lambda job, error: failures.append((job.state, str(error))))
        await queue.initialize()

        job = await queue.enqueue("refund.updated", {}, "evt_456")
        assert job.priority == 3

        async def failed():
            return (await queue.get_health()).jobs.failed == 1

        await wait_until(failed)
        assert len(processor.events) == 3
        assert [state for state, _ in failures] == [
            JobState.DELAYED,
            JobState.DELAYED,
            JobState.FAILED,
        ]

        [info] = await queue.get_failed_jobs()
        assert info.id == "evt_456"
        assert info.event_type == "refund.updated"
        assert info.failed_reason == "DB connection lost"
        assert info.attempts_made == 3
        assert info.finished_on is not None

        # Operator fixes the cause and retries by hand
        processor.error = None
        job = await queue.retry_failed_job("evt_456")
        assert job.attempts_made == 0
        assert job.priority == 3

        async def completed():
            return (await queue.get_health()).jobs.completed == 1

        await wait_until(completed)
        assert len(processor.events) == 4
        assert await queue.get_failed_jobs() == []

    @pytest.mark.asyncio
    async def test_priority_order_with_single_worker(self, queue_factory):
        processor = RecordingProcessor()
        queue = queue_factory(processor)
        await queue.initialize()
        await queue.pause()

        await queue.enqueue("source.chargeable", {}, "evt_other")
        await queue.enqueue("refund.updated", {}, "evt_refund")
        await queue.enqueue("payment.failed", {}, "evt_failed")
        await queue.enqueue("payment.paid", {}, "evt_paid")
        await queue.resume()

        async def done():
            return (await queue.get_health()).jobs.completed == 4

        await wait_until(done)
        assert [e.event_id for e in processor.events] == [
            "evt_paid",
            "evt_failed",
            "evt_refund",
            "evt_other",
        ]

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_processing(self, queue_factory):
        queue = queue_factory(RecordingProcessor())
        seen = []

        def broken(job, result):
            raise ValueError("listener bug")

        async def recording(job, result):
            seen.append(job.id)

        queue.on(QueueEvent.COMPLETED, broken)
        queue.on(QueueEvent.COMPLETED, recording)
        await queue.initialize()
        await queue.enqueue("payment.paid", {}, "evt_123")

        async def done():
            return seen == ["evt_123"]

        await wait_until(done)

    @pytest.mark.asyncio
    async def test_off_removes_listener(self, queue_factory):
        queue = queue_factory()
        listener = MagicMock()
        queue.on(QueueEvent.READY, listener)
        queue.off(QueueEvent.READY, listener)
        queue.off(QueueEvent.READY, listener)

        await queue.initialize()

        listener.assert_not_called()


class TestRetryFailedJob:
    @pytest.mark.asyncio
    async def test_unknown_job(self, queue_factory):
        queue = queue_factory()
        await queue.initialize()

        with pytest.raises(JobNotFoundError):
            await queue.retry_failed_job("evt_missing")

    @pytest.mark.asyncio
    async def test_job_not_failed(self, queue_factory):
        queue = queue_factory()
        await queue.initialize()
        await queue.enqueue("payment.paid", {}, "evt_123")

        with pytest.raises(JobNotFailedError):
            await queue.retry_failed_job("evt_123")

    @pytest.mark.asyncio
    async def test_completed_job_is_not_retried(self, queue_factory):
        queue = queue_factory(RecordingProcessor())
        await queue.initialize()
        await queue.enqueue("payment.paid", {}, "evt_123")

        async def completed():
            return (await queue.get_health()).jobs.completed == 1

        await wait_until(completed)

        with pytest.raises(JobNotFailedError) as exc_info:
            await queue.retry_failed_job("evt_123")
        assert exc_info.value.state == "completed"
        assert (await queue.get_health()).jobs.waiting == 0

    @pytest.mark.asyncio
    async def test_active_job_is_not_retried(self, queue_factory):
        started = asyncio.Event()
        release = asyncio.Event()

        async def blocking(event):
            started.set()
            await release.wait()

        queue = queue_factory(blocking)
        await queue.initialize()
        await queue.enqueue("payment.paid", {}, "evt_123")
        await asyncio.wait_for(started.wait(), timeout=5)

        with pytest.raises(JobNotFailedError) as exc_info:
            await queue.retry_failed_job("evt_123")
        assert exc_info.value.state == "active"

        health = await queue.get_health()
        assert health.jobs.active == 1
        assert health.jobs.waiting == 0
        release.set()

    @pytest.mark.asyncio
    async def test_before_initialize(self, queue_factory):
        with pytest.raises(QueueNotInitializedError):
            await queue_factory().retry_failed_job("evt_123")


class TestGetFailedJobs:
    @pytest.mark.asyncio
    async def test_uninitialized_returns_empty(self, queue_factory):
        assert await queue_factory().get_failed_jobs() == []

    @pytest.mark.asyncio
    async def test_redis_error_returns_empty(self, queue_factory, fake_redis):
        queue = queue_factory()
        await queue.initialize()
        fake_redis.error = RedisConnectionError("Connection refused")

        assert await queue.get_failed_jobs() == []

    @pytest.mark.asyncio
    async def test_limit(self, queue_factory, settings_factory):
        processor = RecordingProcessor(error=RuntimeError("boom"))
        queue = queue_factory(processor, settings=settings_factory(webhook_job_attempts=1))
        await queue.initialize()
        for i in range(5):
            await queue.enqueue("payment.paid", {}, f"evt_{i}")

        async def all_failed():
            return (await queue.get_health()).jobs.failed == 5

        await wait_until(all_failed)
        assert len(await queue.get_failed_jobs(limit=2)) == 2
        assert len(await queue.get_failed_jobs()) == 5


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_before_initialize_is_noop(self, queue_factory):
        await queue_factory().shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, queue_factory, fake_redis):
        queue = queue_factory(RecordingProcessor())
        await queue.initialize()
        worker = queue.worker

        await queue.shutdown()
        await queue.shutdown()

        assert not queue.is_initialized
        assert not queue.is_ready
        assert queue.worker is None
        assert not worker.running
        # Injected clients belong to the caller
        assert fake_redis.closed is False

    @pytest.mark.asyncio
    async def test_enqueue_after_shutdown(self, queue_factory):
        queue = queue_factory()
        await queue.initialize()
        await queue.shutdown()

        with pytest.raises(QueueNotInitializedError):
            await queue.enqueue("payment.paid", {}, "evt_123")

    @pytest.mark.asyncio
    async def test_owned_client_is_closed(self, settings, fake_redis):
        queue = WebhookQueue(settings)
        with patch.object(WebhookQueue, "_create_redis", return_value=fake_redis):
            await queue.initialize()

        await queue.shutdown()

        assert fake_redis.closed is True

    @pytest.mark.asyncio
    async def test_async_context_manager(self, settings, fake_redis):
        async with WebhookQueue(settings, redis=fake_redis) as queue:
            assert queue.is_initialized
            await queue.enqueue("payment.paid", {}, "evt_123")

        assert not queue.is_initialized
