"""
Presence Queue Processor — batched, convergent online/offline reconciliation.

Each tick pops up to batch_size events, reduces them to one final state per
user, then applies two grouped store updates (all-online, all-offline),
session bookkeeping, and the per-user cache mirror. Lost or reordered
events are repaired by the stale-presence sweep.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from cache.cache_base import BaseChatCache
from database.store_base import BaseChatStore
from job_queue.backends import Job
from job_queue.runtime import JobQueueRuntime
from models.schemas import PresenceEvent, PresenceRecord, PublicStatus

logger = structlog.get_logger()

PRESENCE_QUEUE = "presence"

ORDERING_PROCESSING = "processing"     # last dequeued event wins
ORDERING_TIMESTAMP = "timestamp"       # newest event timestamp wins


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def reduce_events(events: list[PresenceEvent], ordering: str = ORDERING_PROCESSING) -> dict[str, PresenceEvent]:
    """Collapse a batch to one final event per user."""
    final: dict[str, PresenceEvent] = {}
    for event in events:
        current = final.get(event.user_id)
        if current is None or ordering != ORDERING_TIMESTAMP or event.timestamp >= current.timestamp:
            final[event.user_id] = event
    return final


def presence_payload(record: PresenceRecord, public_status: Optional[PublicStatus] = None) -> dict[str, Any]:
    """Cache representation of a presence record."""
    return {
        "user_id": record.user_id,
        "is_online": record.is_online,
        "connection_id": record.connection_id,
        "last_seen": record.last_seen.isoformat() if record.last_seen else None,
        "last_activity_at": record.last_activity_at.isoformat() if record.last_activity_at else None,
        "invisible_mode": record.invisible_mode,
        "public_status": (public_status or record.public_status).value,
    }


class PresenceQueueProcessor:
    """Producer and batch consumer for the presence queue."""

    def __init__(
        self,
        runtime: JobQueueRuntime,
        store: BaseChatStore,
        cache: BaseChatCache,
        ordering: str = ORDERING_PROCESSING,
        stale_threshold: float = 1800.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if ordering not in (ORDERING_PROCESSING, ORDERING_TIMESTAMP):
            raise ValueError(f"Unknown presence ordering: {ordering}")
        self.runtime = runtime
        self.store = store
        self.cache = cache
        self.ordering = ordering
        self.stale_threshold = stale_threshold
        self._clock = clock

    async def enqueue_presence_update(self, user_id: str, is_online: bool,
                                      connection_id: Optional[str] = None) -> str:
        event = PresenceEvent(user_id=user_id, is_online=is_online, connection_id=connection_id)
        return await self.runtime.enqueue(PRESENCE_QUEUE, event.model_dump())

    async def handle_batch(self, jobs: list[Job]):
        events = [PresenceEvent.model_validate(job.payload) for job in jobs]
        await self.apply_events(events)

    async def apply_events(self, events: list[PresenceEvent]) -> dict[str, PresenceEvent]:
        final = reduce_events(events, self.ordering)
        now = self._clock()

        online = {uid: e.connection_id for uid, e in final.items() if e.is_online}
        offline = [uid for uid, e in final.items() if not e.is_online]

        await self.store.mark_online(online, now)
        await self.store.mark_offline(offline, now)
        if online:
            logger.info("presence_marked_online", count=len(online))
        if offline:
            logger.info("presence_marked_offline", count=len(offline))

        for event in events:
            if not event.connection_id:
                continue
            if event.is_online:
                await self.store.touch_session(event.user_id, event.connection_id, now)
            else:
                await self.store.close_session(event.connection_id, now, reason="disconnect")

        for user_id in final:
            await self._mirror(user_id)
        return final

    async def _mirror(self, user_id: str, public_status: Optional[PublicStatus] = None):
        record = await self.store.get_presence(user_id)
        if record is not None:
            await self.cache.set_presence(user_id, presence_payload(record, public_status))

    async def set_invisible_mode(self, user_id: str, enabled: bool) -> dict[str, Any]:
        record = await self.store.set_invisible_mode(user_id, enabled)
        if enabled:
            public = PublicStatus.OFFLINE
        else:
            public = PublicStatus.ONLINE if record.connection_id else PublicStatus.OFFLINE
        payload = presence_payload(record, public)
        await self.cache.set_presence(user_id, payload)
        logger.info("invisible_mode_updated", user_id=user_id, enabled=enabled, public_status=public.value)
        return payload

    async def get_presence(self, user_id: str) -> Optional[dict[str, Any]]:
        cached = await self.cache.get_presence(user_id)
        if cached:
            return cached
        record = await self.store.get_presence(user_id)
        return presence_payload(record) if record else None

    async def sweep_stale_presence(self) -> dict[str, int]:
        """Force offline anyone online without activity for stale_threshold seconds."""
        now = self._clock()
        cutoff = now - timedelta(seconds=self.stale_threshold)

        stale = await self.store.find_stale_online(cutoff)
        if stale:
            await self.store.mark_offline(stale, now)
            for user_id in stale:
                await self._mirror(user_id)
        sessions = await self.store.close_stale_sessions(cutoff, now, reason="inactivity_timeout")

        if stale or sessions:
            logger.info("stale_presence_swept", users=len(stale), sessions=sessions)
        return {"users": len(stale), "sessions": sessions}

    def register(self, workers) -> None:
        self.runtime.process_batch(PRESENCE_QUEUE, self.handle_batch,
                                   batch_size=workers.presence_batch_size,
                                   interval=workers.presence_interval)
