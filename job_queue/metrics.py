"""Per-queue processed / failed / retried / dead-lettered counters for the worker process."""
from __future__ import annotations

from typing import Any


class QueueMetrics:
    """Tracks per-queue job outcomes and processing time. Resets on process restart."""

    def __init__(self, queue: str):
        self.queue = queue
        self.processed: int = 0
        self.failed: int = 0
        self.retried: int = 0
        self.dead_lettered: int = 0
        self.replayed: int = 0
        self._durations: list[float] = []
        self._errors: list[str] = []

    def record_processed(self, duration_ms: float = 0.0):
        self.processed += 1
        self._observe(duration_ms)

    def record_failure(self, error: str = "", duration_ms: float = 0.0):
        self.failed += 1
        self._observe(duration_ms)
        if error:
            self._errors.append(error)
            self._errors = self._errors[-50:]

    def record_retry(self):
        self.retried += 1

    def record_dead_letter(self):
        self.dead_lettered += 1

    def record_replay(self):
        self.replayed += 1

    def _observe(self, duration_ms: float):
        if duration_ms > 0:
            self._durations.append(duration_ms)
            self._durations = self._durations[-500:]

    @property
    def avg_duration_ms(self) -> float:
        return sum(self._durations) / len(self._durations) if self._durations else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.processed + self.failed
        return self.failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue": self.queue,
            "processed": self.processed,
            "failed": self.failed,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "replayed": self.replayed,
            "avg_duration_ms": round(self.avg_duration_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }
