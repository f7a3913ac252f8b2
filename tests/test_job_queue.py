"""
Tests for the job queue runtime.

Covers:
  - Backoff delays
  - Error classification
  - Retry, exhaustion and dead-lettering per QueuePolicy
  - Requeue-forever policy of the chat queues
  - Bounded dead-letter replay
  - Batch handlers
  - Queue factory and polling loops
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

from pydantic import ValidationError

from job_queue.backends import (
    BackoffPolicy, InMemoryQueueBackend, Job, JobState, RedisQueueBackend, create_queue_backend,
)
from job_queue.errors import (
    CircuitOpenError, ErrorCategory, PermanentJobError, ProviderUnavailableError,
    TransientJobError, classify_error,
)
from job_queue.runtime import JobQueueRuntime, QueuePolicy
from models.schemas import Message


def _no_backoff(max_attempts: int = 3, dead_letter: bool = True) -> QueuePolicy:
    return QueuePolicy(max_attempts=max_attempts, backoff=BackoffPolicy(type="none", delay=0.0),
                       dead_letter=dead_letter)


# ──────────────────────────────────────────────────────────────
#  Backoff & Job model
# ──────────────────────────────────────────────────────────────

class TestBackoffPolicy:
    def test_exponential(self):
        policy = BackoffPolicy(type="exponential", delay=2.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]

    def test_linear(self):
        policy = BackoffPolicy(type="linear", delay=1.5)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.5, 3.0, 4.5]

    def test_fixed(self):
        assert BackoffPolicy(type="fixed", delay=5.0).delay_for(7) == 5.0

    def test_none(self):
        assert BackoffPolicy(type="none", delay=5.0).delay_for(3) == 0.0


class TestJob:
    def test_defaults(self):
        job = Job(queue_name="tasks", payload={"x": 1})
        assert job.job_id.startswith("job_")
        assert job.state == JobState.WAITING
        assert job.enqueued_at

    def test_unlimited_attempts_never_exhausted(self):
        job = Job(queue_name="tasks", max_attempts=0, attempts_made=1000)
        assert job.attempts_exhausted is False

    def test_from_json_restores_backoff(self):
        job = Job(queue_name="tasks", backoff=BackoffPolicy("linear", 3.0), attempts_made=2)
        restored = Job.from_json(job.to_json())
        assert restored.backoff == BackoffPolicy("linear", 3.0)
        assert restored.attempts_made == 2
        assert restored.job_id == job.job_id


# ──────────────────────────────────────────────────────────────
#  Error taxonomy
# ──────────────────────────────────────────────────────────────

class TestClassifyError:
    def test_job_errors_carry_their_category(self):
        assert classify_error(TransientJobError("x")) == ErrorCategory.TRANSIENT
        assert classify_error(PermanentJobError("x")) == ErrorCategory.PERMANENT
        assert classify_error(CircuitOpenError("fcm")) == ErrorCategory.EXTERNAL_SERVICE_DOWN
        assert classify_error(ProviderUnavailableError("down")) == ErrorCategory.EXTERNAL_SERVICE_DOWN

    def test_timeouts_and_connections_are_transient(self):
        assert classify_error(asyncio.TimeoutError()) == ErrorCategory.TRANSIENT
        assert classify_error(ConnectionRefusedError()) == ErrorCategory.TRANSIENT

    def test_malformed_payload_is_permanent(self):
        with pytest.raises(ValidationError) as exc_info:
            Message.model_validate({"sender_id": "u1"})
        assert classify_error(exc_info.value) == ErrorCategory.PERMANENT
        assert classify_error(KeyError("missing")) == ErrorCategory.PERMANENT

    def test_service_unavailable_text(self):
        assert classify_error(RuntimeError("503 Service Unavailable")) == ErrorCategory.EXTERNAL_SERVICE_DOWN

    def test_unknown_defaults_to_transient(self):
        assert classify_error(RuntimeError("boom")) == ErrorCategory.TRANSIENT


# ──────────────────────────────────────────────────────────────
#  Runtime: processing and retries
# ──────────────────────────────────────────────────────────────

class TestRuntimeProcessing:
    @pytest.fixture
    def rt(self):
        return JobQueueRuntime(InMemoryQueueBackend())

    @pytest.mark.asyncio
    async def test_enqueue_and_process(self, rt):
        handler = AsyncMock()
        rt.process("tasks", handler)
        job_id = await rt.enqueue("tasks", {"x": 1})

        assert await rt.run_once("tasks") == 1
        job = handler.call_args.args[0]
        assert job.job_id == job_id
        assert job.payload == {"x": 1}
        assert job.attempts_made == 1
        assert rt.metrics_for("tasks").processed == 1
        assert await rt.backend.length("tasks") == 0

    @pytest.mark.asyncio
    async def test_run_once_on_empty_queue(self, rt):
        rt.process("tasks", AsyncMock())
        assert await rt.run_once("tasks") == 0

    @pytest.mark.asyncio
    async def test_unregistered_queue_raises(self, rt):
        with pytest.raises(KeyError):
            await rt.run_once("nobody")

    @pytest.mark.asyncio
    async def test_enqueue_uses_queue_policy(self):
        rt = JobQueueRuntime(InMemoryQueueBackend(), policies={
            "notifications": QueuePolicy(max_attempts=5, backoff=BackoffPolicy("exponential", 2.0)),
        })
        await rt.enqueue("notifications", {})
        [job] = await rt.backend.peek("notifications")
        assert job.max_attempts == 5
        assert job.backoff == BackoffPolicy("exponential", 2.0)

    @pytest.mark.asyncio
    async def test_enqueue_overrides(self, rt):
        await rt.enqueue("tasks", {}, max_attempts=9, backoff=BackoffPolicy("fixed", 1.0), metadata={"k": "v"})
        [job] = await rt.backend.peek("tasks")
        assert job.max_attempts == 9
        assert job.backoff.type == "fixed"
        assert job.metadata == {"k": "v"}

    @pytest.mark.asyncio
    async def test_transient_failure_scheduled_with_backoff(self, rt):
        rt.process("tasks", AsyncMock(side_effect=TransientJobError("flaky")),
                   policy=QueuePolicy(max_attempts=3, backoff=BackoffPolicy("exponential", 60.0)))
        await rt.enqueue("tasks", {})
        await rt.run_once("tasks")

        assert await rt.backend.length("tasks") == 0
        assert await rt.backend.delayed_length("tasks") == 1
        assert rt.metrics_for("tasks").retried == 1

    @pytest.mark.asyncio
    async def test_exhausted_job_moves_to_dlq_with_origin(self, rt):
        rt.process("tasks", AsyncMock(side_effect=TransientJobError("flaky")), policy=_no_backoff(3))
        job_id = await rt.enqueue("tasks", {"order": 42})

        for _ in range(3):
            await rt.run_once("tasks")

        assert await rt.backend.length("tasks") == 0
        [dead] = await rt.dead_letters()
        assert dead.payload == {"order": 42}
        assert dead.metadata["origin_queue"] == "tasks"
        assert dead.metadata["origin_job_id"] == job_id
        assert dead.metadata["attempts_made"] == 3
        assert dead.metadata["reason"] == "transient"

        [failed] = await rt.failed_jobs("tasks")
        assert failed.metadata["failed_reason"] == "dead_lettered"
        assert failed.state == JobState.DEAD_LETTERED
        assert dead.state == JobState.WAITING
        assert rt.metrics_for("tasks").dead_lettered == 1

    @pytest.mark.asyncio
    async def test_attempts_never_exceed_max(self, rt):
        handler = AsyncMock(side_effect=TransientJobError("flaky"))
        rt.process("tasks", handler, policy=_no_backoff(2))
        await rt.enqueue("tasks", {})
        for _ in range(5):
            await rt.run_once("tasks")
        assert handler.await_count == 2

    @pytest.mark.asyncio
    async def test_permanent_error_skips_retries(self, rt):
        handler = AsyncMock(side_effect=PermanentJobError("bad payload"))
        rt.process("tasks", handler, policy=_no_backoff(5))
        await rt.enqueue("tasks", {})
        await rt.run_once("tasks")

        assert handler.await_count == 1
        [dead] = await rt.dead_letters()
        assert dead.metadata["reason"] == "permanent"

    @pytest.mark.asyncio
    async def test_no_dead_letter_policy_records_failure(self, rt):
        rt.process("tasks", AsyncMock(side_effect=TransientJobError("x")), policy=_no_backoff(1, dead_letter=False))
        await rt.enqueue("tasks", {})
        await rt.run_once("tasks")

        assert await rt.dead_letters() == []
        [failed] = await rt.failed_jobs("tasks")
        assert failed.metadata["failed_reason"] == "attempts_exhausted"
        assert failed.state == JobState.FAILED

    @pytest.mark.asyncio
    async def test_requeue_forever_policy(self, runtime):
        """messages/receipts/presence keep retrying immediately, whatever the error."""
        handler = AsyncMock(side_effect=ValueError("db down"))
        runtime.process("messages", handler)
        await runtime.enqueue("messages", {"id": "m1"})

        for _ in range(10):
            assert await runtime.run_once("messages") == 1

        [job] = await runtime.backend.peek("messages")
        assert job.attempts_made == 10
        assert await runtime.dead_letters() == []

    @pytest.mark.asyncio
    async def test_requeue_policy_drops_explicit_permanent_errors(self, runtime):
        runtime.process("receipts", AsyncMock(side_effect=PermanentJobError("unknown receipt")))
        await runtime.enqueue("receipts", {"type": "bogus"})
        await runtime.run_once("receipts")

        assert await runtime.backend.length("receipts") == 0
        assert await runtime.dead_letters() == []
        [failed] = await runtime.failed_jobs("receipts")
        assert failed.metadata["failed_reason"] == "permanent"

    @pytest.mark.asyncio
    async def test_notifications_policy_from_settings(self, runtime):
        policy = runtime.policy_for("notifications")
        assert policy.max_attempts == 5
        assert policy.backoff.delay_for(3) == 8.0
        assert runtime.policy_for("anything-else").max_attempts == 3


# ──────────────────────────────────────────────────────────────
#  Runtime: dead-letter replay
# ──────────────────────────────────────────────────────────────

class TestDeadLetterSweep:
    @pytest.fixture
    def rt(self):
        return JobQueueRuntime(InMemoryQueueBackend())

    async def _dead_letter_one(self, rt, handler):
        rt.process("tasks", handler, policy=_no_backoff(1))
        await rt.enqueue("tasks", {"n": 1})
        await rt.run_once("tasks")
        assert len(await rt.dead_letters()) == 1

    @pytest.mark.asyncio
    async def test_sweep_replays_once_on_origin_queue(self, rt):
        handler = AsyncMock(side_effect=[TransientJobError("x"), None])
        await self._dead_letter_one(rt, handler)

        assert await rt.sweep_dead_letters() == 1
        assert await rt.dead_letters() == []
        [replay] = await rt.backend.peek("tasks")
        assert replay.max_attempts == 1
        assert replay.metadata["replayed"] is True
        assert replay.payload == {"n": 1}

        await rt.run_once("tasks")
        assert rt.metrics_for("tasks").processed == 1
        assert rt.metrics_for("tasks").replayed == 1

    @pytest.mark.asyncio
    async def test_failed_replay_is_not_dead_lettered_again(self, rt):
        handler = AsyncMock(side_effect=TransientJobError("still broken"))
        await self._dead_letter_one(rt, handler)

        await rt.sweep_dead_letters()
        await rt.run_once("tasks")

        assert await rt.dead_letters() == []
        reasons = [j.metadata["failed_reason"] for j in await rt.failed_jobs("tasks")]
        assert "replay_failed" in reasons
        assert await rt.sweep_dead_letters() == 0

    @pytest.mark.asyncio
    async def test_sweep_empty_dlq(self, rt):
        assert await rt.sweep_dead_letters() == 0

    @pytest.mark.asyncio
    async def test_dlq_job_without_origin_is_failed(self, rt):
        await rt.backend.push(Job(queue_name=rt.dead_letter_queue, payload={}))
        assert await rt.sweep_dead_letters() == 0
        assert len(await rt.failed_jobs(rt.dead_letter_queue)) == 1


# ──────────────────────────────────────────────────────────────
#  Runtime: batches, inspection, loops
# ──────────────────────────────────────────────────────────────

class TestRuntimeBatchAndLoops:
    @pytest.mark.asyncio
    async def test_batch_handler_receives_up_to_batch_size(self):
        rt = JobQueueRuntime(InMemoryQueueBackend())
        handler = AsyncMock()
        rt.process_batch("presence", handler, batch_size=3)
        for i in range(5):
            await rt.enqueue("presence", {"i": i})

        assert await rt.run_once("presence") == 3
        assert [j.payload["i"] for j in handler.call_args.args[0]] == [0, 1, 2]
        assert await rt.run_once("presence") == 2

    @pytest.mark.asyncio
    async def test_batch_failure_applies_policy_to_every_job(self):
        rt = JobQueueRuntime(InMemoryQueueBackend())
        rt.process_batch("presence", AsyncMock(side_effect=TransientJobError("db")),
                         policy=_no_backoff(0, dead_letter=False), batch_size=10)
        for i in range(3):
            await rt.enqueue("presence", {"i": i})
        await rt.run_once("presence")
        assert await rt.backend.length("presence") == 3

    @pytest.mark.asyncio
    async def test_queue_depths_include_dlq(self):
        rt = JobQueueRuntime(InMemoryQueueBackend())
        rt.process("tasks", AsyncMock())
        await rt.enqueue("tasks", {})
        depths = await rt.queue_depths()
        assert depths["tasks"] == {"waiting": 1, "delayed": 0}
        assert depths["dead-letter"] == {"waiting": 0, "delayed": 0}

    @pytest.mark.asyncio
    async def test_polling_loop_and_periodic_task(self):
        rt = JobQueueRuntime(InMemoryQueueBackend())
        done = asyncio.Event()

        async def handler(job):
            done.set()

        ticks = []

        async def periodic():
            ticks.append(1)

        rt.process("tasks", handler, interval=0.01)
        rt.every("tick", 0.01, periodic)
        await rt.start()
        await rt.enqueue("tasks", {})
        await asyncio.wait_for(done.wait(), timeout=2.0)
        await asyncio.sleep(0.05)
        await rt.stop()

        assert ticks
        assert rt.metrics_for("tasks").processed == 1

    @pytest.mark.asyncio
    async def test_consumer_loop_survives_backend_errors(self):
        backend = InMemoryQueueBackend()
        backend.pop = AsyncMock(side_effect=ConnectionError("redis gone"))
        rt = JobQueueRuntime(backend)
        rt.process("tasks", AsyncMock(), interval=0.01)
        await rt.start()
        await asyncio.sleep(0.05)
        await rt.stop()
        assert backend.pop.await_count >= 2


class TestQueueFactory:
    def test_memory_default(self):
        assert isinstance(create_queue_backend(), InMemoryQueueBackend)

    def test_redis_selected(self):
        backend = create_queue_backend({"backend": "redis", "redis_url": "redis://localhost:6379",
                                        "key_prefix": "q"})
        assert isinstance(backend, RedisQueueBackend)
        assert backend._key("messages", "delayed") == "q:messages:delayed"

    def test_failed_retention_passed_through(self):
        assert create_queue_backend({"failed_retention": 5})._failed_retention == 5
        backend = create_queue_backend({"backend": "redis", "failed_retention": 7})
        assert backend._failed_retention == 7


class TestFailedRetention:
    @pytest.mark.asyncio
    async def test_failed_list_keeps_newest_only(self):
        backend = InMemoryQueueBackend(failed_retention=2)
        for n in range(3):
            await backend.record_failed(Job(queue_name="tasks", payload={"n": n}, state=JobState.FAILED))

        failed = await backend.failed_jobs("tasks")
        assert [j.payload["n"] for j in failed] == [2, 1]

    @pytest.mark.asyncio
    async def test_runtime_failures_stay_bounded(self):
        rt = JobQueueRuntime(InMemoryQueueBackend(failed_retention=3))
        rt.process("tasks", AsyncMock(side_effect=TransientJobError("x")), policy=_no_backoff(1, dead_letter=False))
        for n in range(10):
            await rt.enqueue("tasks", {"n": n})
        for _ in range(10):
            await rt.run_once("tasks")

        failed = await rt.failed_jobs("tasks")
        assert [j.payload["n"] for j in failed] == [9, 8, 7]
        assert rt.metrics_for("tasks").failed == 10
