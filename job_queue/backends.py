"""
Durable Queue Store — ordered, at-least-once work lists with Redis and in-memory backends.

Key Topology (Redis, per queue name):
  {prefix}:{queue}            LIST   waiting jobs, RPUSH on enqueue, LPOP on consume
  {prefix}:{queue}:delayed    ZSET   jobs waiting out a backoff, scored by run-at epoch
  {prefix}:{queue}:failed     LIST   failed jobs, newest first, trimmed to failed_retention

Job Schema:
  {
      "job_id":        unique job identifier (stable across retries),
      "queue_name":    owning queue,
      "payload":       handler input, transferred verbatim to the dead-letter queue,
      "attempts_made": attempts started so far,
      "max_attempts":  ceiling before dead-lettering (0 = unlimited),
      "backoff":       {"type": exponential|linear|fixed|none, "delay": seconds},
      "state":         waiting|active|completed|failed|dead_lettered,
      "enqueued_at":   ISO timestamp of the first enqueue,
      "metadata":      origin queue, failure reason, replay marker, ...
  }
"""
from __future__ import annotations

import json
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


@dataclass
class BackoffPolicy:
    type: str = "exponential"
    delay: float = 1.0

    def delay_for(self, attempts_made: int) -> float:
        """Seconds to wait before the next attempt, given attempts already made."""
        attempts_made = max(attempts_made, 1)
        if self.type == "exponential":
            return self.delay * (2 ** (attempts_made - 1))
        if self.type == "linear":
            return self.delay * attempts_made
        if self.type == "fixed":
            return self.delay
        return 0.0


@dataclass
class Job:
    """A unit of work on a queue."""
    queue_name: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempts_made: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    state: JobState = JobState.WAITING
    enqueued_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    job_id: str = ""

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"job_{uuid.uuid4().hex[:12]}"
        if not self.enqueued_at:
            self.enqueued_at = datetime.now(timezone.utc).isoformat()
        if isinstance(self.backoff, dict):
            self.backoff = BackoffPolicy(**self.backoff)
        if not isinstance(self.state, JobState):
            self.state = JobState(self.state)

    @property
    def attempts_exhausted(self) -> bool:
        return self.max_attempts > 0 and self.attempts_made >= self.max_attempts

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        data = dict(data)  # copy
        data["attempts_made"] = int(data.get("attempts_made", 0))
        data["max_attempts"] = int(data.get("max_attempts", 3))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @classmethod
    def from_json(cls, raw: str) -> Job:
        return cls.from_dict(json.loads(raw))


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class QueueBackend(ABC):
    """Abstract queue store interface."""

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def push(self, job: Job):
        """Append a job to the tail of its queue."""
        ...

    @abstractmethod
    async def push_delayed(self, job: Job, run_at: float):
        """Hold a job until the epoch timestamp run_at, then make it waiting."""
        ...

    @abstractmethod
    async def pop(self, queue: str) -> Optional[Job]:
        """Remove and return the head of a queue, or None when it is empty."""
        ...

    @abstractmethod
    async def promote_delayed(self, queue: str) -> int:
        """Move due delayed jobs of a queue to its tail. Returns the count moved."""
        ...

    @abstractmethod
    async def length(self, queue: str) -> int:
        """Return the number of waiting jobs in a queue."""
        ...

    @abstractmethod
    async def delayed_length(self, queue: str) -> int:
        ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[Job]:
        """Return waiting jobs without consuming them."""
        ...

    @abstractmethod
    async def record_failed(self, job: Job):
        """Keep a job that ended in the failed state for inspection, newest first, up to a retention cap."""
        ...

    @abstractmethod
    async def failed_jobs(self, queue: str, count: int = 100) -> list[Job]:
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisQueueBackend(QueueBackend):
    """
    Production queue store backed by Redis lists + sorted sets.

    Consumption is an LPOP, so a given job is held by at most one worker.
    Delayed promotion claims each member with ZREM before pushing it, so two
    workers promoting concurrently never duplicate a job.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", key_prefix: str = "queue",
                 failed_retention: int = 1000):
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._failed_retention = max(failed_retention, 1)
        self._redis = None

    def _key(self, queue: str, suffix: str = "") -> str:
        key = f"{self._prefix}:{queue}"
        return f"{key}:{suffix}" if suffix else key

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def push(self, job: Job):
        await self._redis.rpush(self._key(job.queue_name), job.to_json())

    async def push_delayed(self, job: Job, run_at: float):
        await self._redis.zadd(self._key(job.queue_name, "delayed"), {job.to_json(): run_at})

    async def pop(self, queue: str) -> Optional[Job]:
        raw = await self._redis.lpop(self._key(queue))
        if raw is None:
            return None
        return Job.from_json(raw)

    async def promote_delayed(self, queue: str) -> int:
        delayed_key = self._key(queue, "delayed")
        ready = await self._redis.zrangebyscore(delayed_key, "-inf", time.time())
        moved = 0
        for raw in ready:
            if await self._redis.zrem(delayed_key, raw):
                await self._redis.rpush(self._key(queue), raw)
                moved += 1
        if moved:
            logger.debug("delayed_jobs_promoted", queue=queue, count=moved)
        return moved

    async def length(self, queue: str) -> int:
        return await self._redis.llen(self._key(queue))

    async def delayed_length(self, queue: str) -> int:
        return await self._redis.zcard(self._key(queue, "delayed"))

    async def peek(self, queue: str, count: int = 10) -> list[Job]:
        items = await self._redis.lrange(self._key(queue), 0, count - 1)
        return [Job.from_json(raw) for raw in items]

    async def record_failed(self, job: Job):
        key = self._key(job.queue_name, "failed")
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lpush(key, job.to_json())
            pipe.ltrim(key, 0, self._failed_retention - 1)
            await pipe.execute()

    async def failed_jobs(self, queue: str, count: int = 100) -> list[Job]:
        items = await self._redis.lrange(self._key(queue, "failed"), 0, count - 1)
        return [Job.from_json(raw) for raw in items]


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryQueueBackend(QueueBackend):
    """
    Development/test queue store backed by deques.
    Single-process only, no persistence.
    """

    def __init__(self, failed_retention: int = 1000):
        self._queues: dict[str, deque[str]] = {}
        self._delayed: dict[str, list[tuple[float, str]]] = {}
        self._failed: dict[str, deque[str]] = {}
        self._failed_retention = max(failed_retention, 1)

    def _get_queue(self, name: str) -> deque[str]:
        if name not in self._queues:
            self._queues[name] = deque()
        return self._queues[name]

    async def connect(self):
        logger.info("inmemory_queue_connected")

    async def close(self):
        pass

    async def push(self, job: Job):
        # Serialized so a consumer never shares a mutable job with the producer
        self._get_queue(job.queue_name).append(job.to_json())

    async def push_delayed(self, job: Job, run_at: float):
        delayed = self._delayed.setdefault(job.queue_name, [])
        delayed.append((run_at, job.to_json()))
        delayed.sort(key=lambda x: x[0])

    async def pop(self, queue: str) -> Optional[Job]:
        q = self._get_queue(queue)
        if not q:
            return None
        return Job.from_json(q.popleft())

    async def promote_delayed(self, queue: str) -> int:
        now = time.time()
        delayed = self._delayed.get(queue, [])
        ready = [raw for ts, raw in delayed if ts <= now]
        self._delayed[queue] = [(ts, raw) for ts, raw in delayed if ts > now]
        self._get_queue(queue).extend(ready)
        return len(ready)

    async def length(self, queue: str) -> int:
        return len(self._get_queue(queue))

    async def delayed_length(self, queue: str) -> int:
        return len(self._delayed.get(queue, []))

    async def peek(self, queue: str, count: int = 10) -> list[Job]:
        return [Job.from_json(raw) for raw in list(self._get_queue(queue))[:count]]

    async def record_failed(self, job: Job):
        failed = self._failed.setdefault(job.queue_name, deque(maxlen=self._failed_retention))
        failed.appendleft(job.to_json())

    async def failed_jobs(self, queue: str, count: int = 100) -> list[Job]:
        return [Job.from_json(raw) for raw in list(self._failed.get(queue, ()))[:count]]


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_queue_backend(queue_config: dict[str, Any] = None) -> QueueBackend:
    """Factory: create the appropriate queue backend."""
    config = queue_config or {}
    backend = config.get("backend", "memory")

    if backend == "redis":
        return RedisQueueBackend(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            key_prefix=config.get("key_prefix", "queue"),
            failed_retention=config.get("failed_retention", 1000),
        )
    return InMemoryQueueBackend(failed_retention=config.get("failed_retention", 1000))
