"""
Message Queue Processor — durable message writes and forward-only receipts.

Flow:
  enqueue_message()            → "messages" job (returns the message id at once)
  handle_message(job)          → insert-or-ignore + unread bump (one transaction)
                               → cache mirror (unread counts copied from the store, recent list)
                               → "new_message" notification trigger
  enqueue_*_receipt()          → "receipts" job
  handle_receipt(job)          → sent → delivered, or * → read

A redelivered message job finds its row already stored and performs no
increment, so at-least-once delivery never double counts.
"""
from __future__ import annotations

import time
import uuid
import structlog
from typing import Any, Awaitable, Callable, Optional, Union

from cache.cache_base import BaseChatCache
from database.store_base import BaseChatStore
from job_queue.backends import Job
from job_queue.errors import PermanentJobError
from job_queue.runtime import JobQueueRuntime
from models.schemas import DeliveryReceipt, Message, ReadReceipt

logger = structlog.get_logger()

MESSAGES_QUEUE = "messages"
RECEIPTS_QUEUE = "receipts"

NotificationTrigger = Callable[..., Awaitable[str]]


def _truncate(text: str, max_length: int = 100) -> str:
    if not text or len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."


class MessageQueueProcessor:
    """Producer and consumer for the messages and receipts queues."""

    def __init__(
        self,
        runtime: JobQueueRuntime,
        store: BaseChatStore,
        cache: BaseChatCache,
        notify: Optional[NotificationTrigger] = None,
        app_id: str = "chat",
    ):
        self.runtime = runtime
        self.store = store
        self.cache = cache
        self.notify = notify
        self.app_id = app_id

    # ── Producers ─────────────────────────────────────────

    async def enqueue_message(self, message: Union[Message, dict[str, Any]]) -> str:
        if isinstance(message, dict):
            message = Message.model_validate(message)
        if not message.id:
            message.id = uuid.uuid4().hex
        message.queued_at = time.time()
        await self.runtime.enqueue(MESSAGES_QUEUE, message.model_dump(mode="json"))
        logger.debug("message_enqueued", message_id=message.id, conversation_id=message.conversation_id)
        return message.id

    async def enqueue_batch_messages(self, messages: list[Union[Message, dict[str, Any]]]) -> list[str]:
        return [await self.enqueue_message(m) for m in messages]

    async def enqueue_delivery_receipt(self, user_id: str, message_ids: list[str]) -> str:
        receipt = DeliveryReceipt(user_id=user_id, message_ids=message_ids)
        return await self.runtime.enqueue(RECEIPTS_QUEUE, {"type": "delivery", **receipt.model_dump()})

    async def enqueue_read_receipt(self, user_id: str, message_ids: list[str] = None,
                                   conversation_id: Optional[str] = None) -> str:
        receipt = ReadReceipt(user_id=user_id, message_ids=message_ids or [], conversation_id=conversation_id)
        return await self.runtime.enqueue(RECEIPTS_QUEUE, {"type": "read", **receipt.model_dump()})

    # ── Consumers ─────────────────────────────────────────

    async def handle_message(self, job: Job):
        message = Message.model_validate(job.payload)
        recipients = await self.store.persist_message(message)

        if recipients is None:
            logger.info("message_already_persisted", message_id=message.id, job_id=job.job_id)
            await self._mirror(message, await self._participants_except_sender(message))
            return

        await self._mirror(message, recipients)
        logger.info("message_persisted",
                    message_id=message.id,
                    conversation_id=message.conversation_id,
                    recipients=len(recipients))

        if recipients and self.notify is not None:
            await self._notify_new_message(message, recipients)

    async def _participants_except_sender(self, message: Message) -> list[str]:
        conversation = await self.store.get_conversation(message.conversation_id)
        if conversation is None:
            return []
        return [uid for uid in conversation["participant_ids"] if uid != message.sender_id]

    async def _mirror(self, message: Message, recipients: list[str]):
        """
        Best-effort cache mirror; the store already holds the truth. Counts are
        copied as absolute values, so a redelivered job repairs an earlier miss.
        """
        try:
            for user_id in recipients:
                count = await self.store.get_unread_count(message.conversation_id, user_id)
                await self.cache.set_unread(user_id, message.conversation_id, count)
            await self.cache.cache_message(message)
        except Exception as e:
            logger.warning("cache_mirror_failed", message_id=message.id, error=str(e))

    async def _notify_new_message(self, message: Message, recipients: list[str]):
        try:
            await self.notify(
                self.app_id,
                "new_message",
                recipients,
                {
                    "conversation_id": message.conversation_id,
                    "message_id": message.id,
                    "sender_id": message.sender_id,
                    "body": _truncate(message.text),
                },
                {"sender_id": message.sender_id},
            )
        except Exception as e:
            logger.error("message_notification_trigger_failed", message_id=message.id, error=str(e))

    async def handle_receipt(self, job: Job):
        kind = job.payload.get("type")
        if kind == "delivery":
            receipt = DeliveryReceipt.model_validate(job.payload)
            await self.apply_delivery_receipt(receipt.user_id, receipt.message_ids)
        elif kind == "read":
            receipt = ReadReceipt.model_validate(job.payload)
            await self.apply_read_receipt(receipt.user_id, receipt.message_ids, receipt.conversation_id)
        else:
            raise PermanentJobError(f"Unknown receipt type: {kind}")

    # ── Synchronous entry points (optimistic UI) ──────────

    async def apply_delivery_receipt(self, user_id: str, message_ids: list[str]) -> list[str]:
        updated = await self.store.mark_delivered(user_id, message_ids)
        logger.info("delivery_receipts_applied", user_id=user_id,
                    requested=len(message_ids), updated=len(updated))
        return updated

    async def apply_read_receipt(self, user_id: str, message_ids: list[str] = None,
                                 conversation_id: Optional[str] = None) -> list[str]:
        updated = []
        if message_ids:
            updated += await self.store.mark_read(user_id, message_ids)
        if conversation_id:
            updated += await self.store.mark_conversation_read(user_id, conversation_id)
            try:
                await self.cache.reset_unread(user_id, conversation_id)
            except Exception as e:
                logger.warning("cache_unread_reset_failed", user_id=user_id,
                               conversation_id=conversation_id, error=str(e))
        logger.info("read_receipts_applied", user_id=user_id,
                    conversation_id=conversation_id, updated=len(updated))
        return updated

    def register(self, workers) -> None:
        """Attach the consumers to the runtime using WorkerConfig intervals."""
        self.runtime.process(MESSAGES_QUEUE, self.handle_message,
                             batch_size=workers.message_batch_size, interval=workers.message_interval)
        self.runtime.process(RECEIPTS_QUEUE, self.handle_receipt,
                             batch_size=workers.message_batch_size, interval=workers.receipt_interval)
