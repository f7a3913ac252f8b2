"""
ChatPipeline — explicit wiring of the delivery pipeline for one process.

    pipeline = ChatPipeline(settings)
    await pipeline.start()                  # connect, register handlers, start polling loops
    await pipeline.enqueue_message({...})   # API-facing entry points
    await pipeline.stop()

Nothing here is a module-level singleton: every collaborator is built from
Settings (or injected) and owned by the pipeline instance.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from cache import create_cache
from cache.cache_base import BaseChatCache
from config.settings import Settings
from database.store_base import BaseChatStore
from database.store_factory import create_store
from job_queue.backends import QueueBackend, create_queue_backend
from job_queue.runtime import Handler, JobQueueRuntime, QueuePolicy
from models.schemas import Platform
from notifications.dispatcher import NotificationDispatcher
from notifications.providers import PushProvider, create_providers
from processors.message_processor import MessageQueueProcessor
from processors.presence_processor import PresenceQueueProcessor

logger = structlog.get_logger()


class ChatPipeline:
    """Owns the queue runtime and every consumer role of one worker process."""

    def __init__(
        self,
        settings: Settings,
        backend: Optional[QueueBackend] = None,
        store: Optional[BaseChatStore] = None,
        cache: Optional[BaseChatCache] = None,
        providers: Optional[dict[Platform, PushProvider]] = None,
    ):
        self.settings = settings
        queue = settings.queue

        self.backend = backend or create_queue_backend({
            "backend": queue.backend,
            "redis_url": queue.redis_url,
            "key_prefix": queue.key_prefix,
            "failed_retention": queue.failed_retention,
        })
        self.runtime = JobQueueRuntime(
            self.backend,
            dead_letter_queue=queue.dead_letter_queue,
            policies={name: QueuePolicy.from_config(p) for name, p in queue.policies.items()},
            default_policy=QueuePolicy.from_config(queue.default_policy),
        )
        self.store = store or create_store(settings.database, echo=settings.debug)
        self.cache = cache or create_cache(settings.cache)

        notifications = settings.notifications
        self.dispatcher = NotificationDispatcher(
            self.runtime,
            self.store,
            providers if providers is not None else create_providers(notifications),
            breaker_config=settings.breaker,
            token_max_idle_days=notifications.token_max_idle_days,
        )
        self.messages = MessageQueueProcessor(
            self.runtime,
            self.store,
            self.cache,
            notify=self.dispatcher.trigger_notification if notifications.enabled else None,
            app_id=notifications.default_app_id,
        )
        self.presence = PresenceQueueProcessor(
            self.runtime,
            self.store,
            self.cache,
            ordering=settings.presence.ordering,
            stale_threshold=settings.presence.stale_threshold,
        )
        self._connected = False
        self._registered = False

    # ── Lifecycle ─────────────────────────────────────────

    async def connect(self):
        if self._connected:
            return
        await self.backend.connect()
        await self.store.init()
        await self.cache.connect()
        self._connected = True

    def register_handlers(self):
        """Attach every consumer and periodic task to the runtime (idempotent)."""
        if self._registered:
            return
        workers = self.settings.workers
        self.messages.register(workers)
        self.presence.register(workers)
        self.runtime.every("dlq_sweep", self.settings.queue.dlq_sweep_interval,
                           self.runtime.sweep_dead_letters)
        self.runtime.every("presence_sweep", self.settings.presence.sweep_interval,
                           self.presence.sweep_stale_presence)
        if self.settings.notifications.enabled:
            self.dispatcher.register(workers)
            self.runtime.every("token_cleanup", self.settings.notifications.cleanup_interval,
                               self.dispatcher.cleanup_expired_tokens)
        self._registered = True

    async def start(self):
        """Connect and start one polling loop per queue plus the periodic tasks."""
        await self.connect()
        self.register_handlers()
        await self.runtime.start()
        logger.info("chat_pipeline_started",
                    queue_backend=type(self.backend).__name__,
                    store=type(self.store).__name__,
                    cache=type(self.cache).__name__)

    async def stop(self):
        await self.runtime.stop()
        await self.dispatcher.close()
        await self.cache.close()
        await self.store.close()
        await self.backend.close()
        self._connected = False
        logger.info("chat_pipeline_stopped")

    # ── Upward entry points ───────────────────────────────

    async def enqueue_message(self, message) -> str:
        return await self.messages.enqueue_message(message)

    async def enqueue_batch_messages(self, messages: list) -> list[str]:
        return await self.messages.enqueue_batch_messages(messages)

    async def enqueue_delivery_receipt(self, user_id: str, message_ids: list[str]) -> str:
        return await self.messages.enqueue_delivery_receipt(user_id, message_ids)

    async def enqueue_read_receipt(self, user_id: str, message_ids: list[str] = None,
                                   conversation_id: Optional[str] = None) -> str:
        return await self.messages.enqueue_read_receipt(user_id, message_ids, conversation_id)

    async def enqueue_presence_update(self, user_id: str, is_online: bool,
                                      connection_id: Optional[str] = None) -> str:
        return await self.presence.enqueue_presence_update(user_id, is_online, connection_id)

    async def set_invisible_mode(self, user_id: str, enabled: bool) -> dict[str, Any]:
        return await self.presence.set_invisible_mode(user_id, enabled)

    async def trigger_notification(self, app_id: str, event_key: str, recipients: list[str],
                                   data: dict[str, Any] = None,
                                   business_context: dict[str, Any] = None) -> str:
        return await self.dispatcher.trigger_notification(app_id, event_key, recipients, data, business_context)

    # ── Generic jobs ──────────────────────────────────────

    def process(self, queue: str, handler: Handler, policy: QueuePolicy = None):
        """Register a handler for an application-defined queue on the default interval."""
        self.runtime.process(queue, handler, policy=policy, interval=self.settings.workers.default_interval)

    async def enqueue_job(self, queue: str, payload: dict[str, Any], **kwargs) -> str:
        return await self.runtime.enqueue(queue, payload, **kwargs)

    # ── Inspection ────────────────────────────────────────

    async def health(self) -> dict[str, Any]:
        return {
            "queues": await self.runtime.queue_depths(),
            "breakers": {name: b.stats for name, b in self.dispatcher.breakers.items()},
            "metrics": self.runtime.stats(),
        }
