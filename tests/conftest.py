"""Shared test fixtures for the chat delivery pipeline."""
import pytest
from datetime import datetime, timezone
from typing import Any

from cache.cache_memory import InMemoryChatCache
from config.settings import Settings
from database.store_memory import InMemoryChatStore
from job_queue.backends import InMemoryQueueBackend
from job_queue.runtime import JobQueueRuntime, QueuePolicy
from models.schemas import Platform, ProviderResult
from notifications.providers import PushProvider


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ScriptedProvider(PushProvider):
    """
    Push provider whose answer per token is scripted:
      ProviderResult → returned, Exception → raised, missing → success.
    """

    def __init__(self, name: str = "scripted", outcomes: dict[str, Any] = None):
        self.name = name
        self.outcomes = outcomes or {}
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    async def send(self, token: str, payload: dict[str, Any]) -> ProviderResult:
        self.sent.append((token, payload))
        outcome = self.outcomes.get(token)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        return ProviderResult(success=True, message_id=f"msg-{len(self.sent)}")

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def backend() -> InMemoryQueueBackend:
    return InMemoryQueueBackend()


@pytest.fixture
def runtime(backend, settings) -> JobQueueRuntime:
    queue = settings.queue
    return JobQueueRuntime(
        backend,
        dead_letter_queue=queue.dead_letter_queue,
        policies={name: QueuePolicy.from_config(p) for name, p in queue.policies.items()},
        default_policy=QueuePolicy.from_config(queue.default_policy),
    )


@pytest.fixture
def store() -> InMemoryChatStore:
    return InMemoryChatStore()


@pytest.fixture
def cache() -> InMemoryChatCache:
    return InMemoryChatCache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider(name="fcm")


@pytest.fixture
def providers(provider) -> dict[Platform, PushProvider]:
    return {Platform.ANDROID: provider, Platform.IOS: provider}


@pytest.fixture
def now() -> datetime:
    return datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
