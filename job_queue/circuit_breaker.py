"""
Circuit breaker for a single risky async call made from a job handler.

closed → open (error percentage over the rolling window reaches the threshold)
       → half_open (after reset_timeout, exactly one trial call)
       → closed (trial succeeds) or open (trial fails).
"""
from __future__ import annotations

import asyncio
import time
import structlog
from collections import deque
from typing import Any, Awaitable, Callable, Optional

from job_queue.errors import CallTimeoutError, CircuitOpenError

logger = structlog.get_logger()

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Error-rate circuit breaker with a time-based rolling window.

    A call that raises or exceeds `timeout` seconds is a failure. While open,
    `call()` raises CircuitOpenError without invoking the wrapped function.
    """

    def __init__(
        self,
        name: str = "",
        timeout: float = 10.0,
        error_threshold_percentage: float = 50.0,
        reset_timeout: float = 30.0,
        rolling_window: float = 10.0,
        volume_threshold: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.timeout = timeout
        self.error_threshold_percentage = error_threshold_percentage
        self.reset_timeout = reset_timeout
        self.rolling_window = rolling_window
        self.volume_threshold = volume_threshold
        self._clock = clock
        self._state = CLOSED
        self._opened_at: float = 0.0
        self._window: deque[tuple[float, bool]] = deque()
        self._trial_in_flight = False
        self._total_failures = 0
        self._total_successes = 0
        self._total_rejected = 0

    @classmethod
    def from_config(cls, name: str, config) -> CircuitBreaker:
        return cls(
            name=name,
            timeout=config.timeout,
            error_threshold_percentage=config.error_threshold_percentage,
            reset_timeout=config.reset_timeout,
            rolling_window=config.rolling_window,
            volume_threshold=config.volume_threshold,
        )

    @property
    def state(self) -> str:
        if self._state == OPEN and self._clock() - self._opened_at >= self.reset_timeout:
            return HALF_OPEN
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == OPEN

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Invoke func through the breaker."""
        state = self.state
        if state == OPEN:
            self._total_rejected += 1
            raise CircuitOpenError(self.name)
        if state == HALF_OPEN:
            if self._trial_in_flight:
                self._total_rejected += 1
                raise CircuitOpenError(self.name)
            self._state = HALF_OPEN
            self._trial_in_flight = True

        try:
            result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            self.record_failure()
            raise CallTimeoutError(self.name, self.timeout) from e
        except asyncio.CancelledError:
            # Cancelled trial frees the slot without an outcome
            self._trial_in_flight = False
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def record_failure(self):
        self._total_failures += 1
        if self._state == HALF_OPEN:
            self._trial_in_flight = False
            self._open()
            return
        self._record(False)
        if self._should_trip():
            self._open()

    def record_success(self):
        self._total_successes += 1
        if self._state == HALF_OPEN:
            self._trial_in_flight = False
            self._close()
            return
        self._record(True)

    def _record(self, ok: bool):
        now = self._clock()
        self._window.append((now, ok))
        cutoff = now - self.rolling_window
        while self._window and self._window[0][0] < cutoff:
            self._window.popleft()

    def _should_trip(self) -> bool:
        calls = len(self._window)
        if calls < self.volume_threshold:
            return False
        failures = sum(1 for _, ok in self._window if not ok)
        return (failures / calls) * 100 >= self.error_threshold_percentage

    def _open(self):
        self._state = OPEN
        self._opened_at = self._clock()
        logger.warning("circuit_opened", breaker=self.name, window_calls=len(self._window))

    def _close(self):
        self._state = CLOSED
        self._window.clear()
        logger.info("circuit_closed", breaker=self.name)

    def reset(self):
        self._trial_in_flight = False
        self._close()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state,
            "window_calls": len(self._window),
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
            "total_rejected": self._total_rejected,
        }
