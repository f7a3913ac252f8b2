"""
Job Queue Runtime — generic enqueue / process over the Durable Queue Store.

Every workload (messages, receipts, presence, notifications, generic tasks)
runs on this one attempt-tracked runtime; what differs is the QueuePolicy.

Topology:
  ┌──────────────┐  enqueue   ┌─────────────────┐  poll   ┌────────────┐
  │  API layer   │──────────▶ │ {queue} (LIST)  │───────▶ │  handler   │
  └──────────────┘            └─────────────────┘         └─────┬──────┘
                                      ▲                         │ failure
                              promote │                         ▼
                              ┌───────┴─────────┐   retry  ┌──────────┐
                              │ {queue}:delayed │◀──────── │  policy  │
                              └─────────────────┘          └────┬─────┘
                                                                │ exhausted / permanent
                              ┌─────────────────┐               │
                              │ dead-letter     │◀──────────────┘
                              └───────┬─────────┘
                                      │ periodic sweep: one more attempt on origin queue
                                      ▼
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from job_queue.backends import BackoffPolicy, Job, JobState, QueueBackend
from job_queue.errors import ErrorCategory, PermanentJobError, classify_error
from job_queue.metrics import QueueMetrics

logger = structlog.get_logger()

Handler = Callable[[Job], Awaitable[Any]]
BatchHandler = Callable[[list[Job]], Awaitable[Any]]


@dataclass
class QueuePolicy:
    """How a queue treats failed jobs."""
    max_attempts: int = 3                 # 0 = unlimited
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    dead_letter: bool = True
    classify_errors: bool = True

    @classmethod
    def from_config(cls, config) -> QueuePolicy:
        return cls(
            max_attempts=config.max_attempts,
            backoff=BackoffPolicy(type=config.backoff.type, delay=config.backoff.delay),
            dead_letter=config.dead_letter,
            classify_errors=config.classify_errors,
        )


@dataclass
class _Registration:
    queue: str
    handler: Callable[..., Awaitable[Any]]
    policy: QueuePolicy
    batch_size: int = 1
    interval: float = 1.0
    batch: bool = False


class JobQueueRuntime:
    """
    Registers handlers per queue and drives them from polling loops.

    Usage:
        runtime = JobQueueRuntime(backend)
        runtime.process("tasks", handle_task)
        job_id = await runtime.enqueue("tasks", {"x": 1})
        await runtime.start()             # one polling loop per registered queue
        await runtime.stop()
    """

    def __init__(
        self,
        backend: QueueBackend,
        dead_letter_queue: str = "dead-letter",
        policies: dict[str, QueuePolicy] = None,
        default_policy: QueuePolicy = None,
    ):
        self.backend = backend
        self.dead_letter_queue = dead_letter_queue
        self._policies = dict(policies or {})
        self._default_policy = default_policy or QueuePolicy()
        self._registrations: dict[str, _Registration] = {}
        self._periodic: list[tuple[str, float, Callable[[], Awaitable[Any]]]] = []
        self._metrics: dict[str, QueueMetrics] = {}
        self._tasks: list[asyncio.Task] = []
        self._running = False

    # ── Configuration ─────────────────────────────────────────

    def policy_for(self, queue: str) -> QueuePolicy:
        if queue in self._registrations:
            return self._registrations[queue].policy
        return self._policies.get(queue, self._default_policy)

    def metrics_for(self, queue: str) -> QueueMetrics:
        if queue not in self._metrics:
            self._metrics[queue] = QueueMetrics(queue)
        return self._metrics[queue]

    def process(
        self,
        queue: str,
        handler: Handler,
        policy: QueuePolicy = None,
        batch_size: int = 1,
        interval: float = 1.0,
    ):
        """Register a handler invoked once per dequeued job."""
        self._registrations[queue] = _Registration(
            queue=queue,
            handler=handler,
            policy=policy or self.policy_for(queue),
            batch_size=max(batch_size, 1),
            interval=interval,
        )
        logger.info("queue_handler_registered", queue=queue, batch_size=batch_size)

    def process_batch(
        self,
        queue: str,
        handler: BatchHandler,
        policy: QueuePolicy = None,
        batch_size: int = 10,
        interval: float = 1.0,
    ):
        """Register a handler invoked once per tick with up to batch_size jobs."""
        self._registrations[queue] = _Registration(
            queue=queue,
            handler=handler,
            policy=policy or self.policy_for(queue),
            batch_size=max(batch_size, 1),
            interval=interval,
            batch=True,
        )
        logger.info("queue_batch_handler_registered", queue=queue, batch_size=batch_size)

    def every(self, name: str, interval: float, func: Callable[[], Awaitable[Any]]):
        """Register a periodic task started alongside the consumer loops."""
        self._periodic.append((name, interval, func))

    # ── Producing ─────────────────────────────────────────────

    async def enqueue(
        self,
        queue: str,
        payload: dict[str, Any],
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
        metadata: dict[str, Any] = None,
    ) -> str:
        policy = self.policy_for(queue)
        job = Job(
            queue_name=queue,
            payload=payload,
            max_attempts=policy.max_attempts if max_attempts is None else max_attempts,
            backoff=backoff or BackoffPolicy(policy.backoff.type, policy.backoff.delay),
            metadata=metadata or {},
        )
        await self.backend.push(job)
        logger.debug("job_enqueued", queue=queue, job_id=job.job_id)
        return job.job_id

    # ── Consuming ─────────────────────────────────────────────

    async def run_once(self, queue: str) -> int:
        """One polling tick: promote due retries, pop up to batch_size jobs, handle them."""
        reg = self._registrations.get(queue)
        if reg is None:
            raise KeyError(f"No handler registered for queue: {queue}")

        await self.backend.promote_delayed(queue)

        jobs: list[Job] = []
        for _ in range(reg.batch_size):
            job = await self.backend.pop(queue)
            if job is None:
                break
            jobs.append(job)

        if not jobs:
            return 0

        if reg.batch:
            await self._execute_batch(reg, jobs)
        else:
            for job in jobs:
                await self._execute(reg, job)
        return len(jobs)

    async def _execute(self, reg: _Registration, job: Job) -> bool:
        job.attempts_made += 1
        job.state = JobState.ACTIVE
        start = time.monotonic()
        try:
            await reg.handler(job)
        except Exception as e:
            await self._handle_failure(reg, job, e, (time.monotonic() - start) * 1000)
            return False

        job.state = JobState.COMPLETED
        self.metrics_for(reg.queue).record_processed((time.monotonic() - start) * 1000)
        logger.debug("job_completed", queue=reg.queue, job_id=job.job_id, attempt=job.attempts_made)
        return True

    async def _execute_batch(self, reg: _Registration, jobs: list[Job]) -> bool:
        for job in jobs:
            job.attempts_made += 1
            job.state = JobState.ACTIVE
        start = time.monotonic()
        try:
            await reg.handler(jobs)
        except Exception as e:
            duration = (time.monotonic() - start) * 1000 / len(jobs)
            for job in jobs:
                await self._handle_failure(reg, job, e, duration)
            return False

        duration = (time.monotonic() - start) * 1000 / len(jobs)
        metrics = self.metrics_for(reg.queue)
        for job in jobs:
            job.state = JobState.COMPLETED
            metrics.record_processed(duration)
        logger.debug("batch_completed", queue=reg.queue, size=len(jobs))
        return True

    async def _handle_failure(self, reg: _Registration, job: Job, exc: Exception, duration_ms: float):
        policy = reg.policy
        if policy.classify_errors or isinstance(exc, PermanentJobError):
            category = classify_error(exc)
        else:
            category = ErrorCategory.TRANSIENT
        self.metrics_for(reg.queue).record_failure(str(exc), duration_ms)
        logger.warning("job_failed",
                       queue=reg.queue,
                       job_id=job.job_id,
                       attempt=job.attempts_made,
                       max_attempts=job.max_attempts,
                       error_category=category.value,
                       error=str(exc))

        if job.metadata.get("replayed"):
            await self._mark_failed(job, "replay_failed", exc)
            return

        if category == ErrorCategory.PERMANENT or job.attempts_exhausted:
            if policy.dead_letter:
                await self._dead_letter(job, exc, category)
            else:
                await self._mark_failed(job, category.value if category == ErrorCategory.PERMANENT
                                        else "attempts_exhausted", exc)
            return

        job.state = JobState.WAITING
        delay = job.backoff.delay_for(job.attempts_made)
        if delay > 0:
            await self.backend.push_delayed(job, time.time() + delay)
        else:
            await self.backend.push(job)
        self.metrics_for(reg.queue).record_retry()
        logger.info("job_scheduled_for_retry",
                    queue=reg.queue,
                    job_id=job.job_id,
                    attempt=job.attempts_made,
                    delay_seconds=delay)

    async def _dead_letter(self, job: Job, exc: Exception, category: ErrorCategory):
        dlq_job = Job(
            queue_name=self.dead_letter_queue,
            payload=job.payload,
            max_attempts=1,
            backoff=BackoffPolicy(type="none", delay=0.0),
            metadata={
                "origin_queue": job.queue_name,
                "origin_job_id": job.job_id,
                "attempts_made": job.attempts_made,
                "max_attempts": job.max_attempts,
                "reason": category.value,
                "error": str(exc)[:500],
                "dead_lettered_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        await self.backend.push(dlq_job)
        await self._mark_failed(job, "dead_lettered", exc, state=JobState.DEAD_LETTERED)
        self.metrics_for(job.queue_name).record_dead_letter()
        logger.warning("job_moved_to_dlq",
                       queue=job.queue_name,
                       job_id=job.job_id,
                       dlq_job_id=dlq_job.job_id,
                       attempts=job.attempts_made,
                       reason=category.value)

    async def _mark_failed(self, job: Job, reason: str, exc: Exception, state: JobState = JobState.FAILED):
        job.state = state
        job.metadata["failed_reason"] = reason
        job.metadata["last_error"] = str(exc)[:500]
        await self.backend.record_failed(job)

    # ── Dead letters ──────────────────────────────────────────

    async def sweep_dead_letters(self) -> int:
        """
        Re-enqueue everything currently waiting in the dead-letter queue onto its
        origin queue for exactly one more attempt. A replay that fails again is
        recorded as failed and does not return to the dead-letter queue.
        """
        waiting = await self.backend.length(self.dead_letter_queue)
        replayed = 0
        for _ in range(waiting):
            dlq_job = await self.backend.pop(self.dead_letter_queue)
            if dlq_job is None:
                break
            origin = dlq_job.metadata.get("origin_queue")
            if not origin:
                dlq_job.state = JobState.FAILED
                await self.backend.record_failed(dlq_job)
                logger.error("dlq_job_without_origin", job_id=dlq_job.job_id)
                continue

            replay = Job(
                queue_name=origin,
                payload=dlq_job.payload,
                max_attempts=1,
                backoff=BackoffPolicy(type="none", delay=0.0),
                metadata={
                    "replayed": True,
                    "origin_job_id": dlq_job.metadata.get("origin_job_id"),
                    "dlq_job_id": dlq_job.job_id,
                },
            )
            await self.backend.push(replay)
            self.metrics_for(origin).record_replay()
            replayed += 1
            logger.info("dlq_job_replayed", job_id=replay.job_id, queue=origin,
                        origin_job_id=dlq_job.metadata.get("origin_job_id"))

        logger.info("dlq_sweep_complete", waiting=waiting, replayed=replayed)
        return replayed

    async def dead_letters(self, count: int = 50) -> list[Job]:
        return await self.backend.peek(self.dead_letter_queue, count)

    async def failed_jobs(self, queue: str, count: int = 100) -> list[Job]:
        return await self.backend.failed_jobs(queue, count)

    async def queue_depths(self) -> dict[str, dict[str, int]]:
        queues = list(self._registrations) + [self.dead_letter_queue]
        depths = {}
        for queue in queues:
            depths[queue] = {
                "waiting": await self.backend.length(queue),
                "delayed": await self.backend.delayed_length(queue),
            }
        return depths

    def stats(self) -> dict[str, Any]:
        return {queue: m.to_dict() for queue, m in self._metrics.items()}

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self):
        """Start one polling loop per registered queue plus the periodic tasks."""
        if self._running:
            return
        self._running = True
        for reg in self._registrations.values():
            self._tasks.append(asyncio.create_task(self._consume_loop(reg), name=f"consume:{reg.queue}"))
        for name, interval, func in self._periodic:
            self._tasks.append(asyncio.create_task(self._periodic_loop(name, interval, func), name=name))
        logger.info("queue_runtime_started",
                    queues=list(self._registrations),
                    periodic=[name for name, _, _ in self._periodic])

    async def stop(self):
        """Cancel all loops. An in-flight job finishes or is lost (at-least-once gap)."""
        self._running = False
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("queue_runtime_stopped")

    async def _consume_loop(self, reg: _Registration):
        logger.info("consumer_started", queue=reg.queue, interval=reg.interval)
        while self._running:
            try:
                await self.run_once(reg.queue)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", queue=reg.queue, error=str(e))
            await asyncio.sleep(reg.interval)

    async def _periodic_loop(self, name: str, interval: float, func: Callable[[], Awaitable[Any]]):
        logger.info("periodic_task_started", task=name, interval=interval)
        while self._running:
            await asyncio.sleep(interval)
            try:
                await func()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("periodic_task_error", task=name, error=str(e))
