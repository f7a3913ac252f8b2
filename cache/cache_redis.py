"""
Redis cache backend.

Key Topology:
  {prefix}:presence:{user_id}                 STRING  JSON presence, TTL presence_ttl
  {prefix}:unread:{user_id}                   HASH    conversation_id → count
  {prefix}:message:{message_id}               STRING  JSON message, TTL message_ttl
  {prefix}:conversation:{id}:messages         LIST    recent message ids, newest first
"""
from __future__ import annotations

import json
import structlog
from typing import Any, Optional

from cache.cache_base import BaseChatCache
from models.schemas import Message

logger = structlog.get_logger()

RECENT_MESSAGES = 100


class RedisChatCache(BaseChatCache):

    def __init__(self, redis_url: str = "redis://localhost:6379", key_prefix: str = "chat",
                 presence_ttl: int = 86400, message_ttl: int = 86400):
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._presence_ttl = presence_ttl
        self._message_ttl = message_ttl
        self._redis = None

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix,) + parts)

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_cache_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.close()
            self._redis = None

    # ── Presence ──────────────────────────────────────────

    async def get_presence(self, user_id: str) -> Optional[dict[str, Any]]:
        raw = await self._redis.get(self._key("presence", user_id))
        return json.loads(raw) if raw else None

    async def set_presence(self, user_id: str, presence: dict[str, Any]):
        await self._redis.set(
            self._key("presence", user_id),
            json.dumps(presence, default=str),
            ex=self._presence_ttl,
        )

    async def delete_presence(self, user_id: str):
        await self._redis.delete(self._key("presence", user_id))

    # ── Unread counts ─────────────────────────────────────

    async def set_unread(self, user_id: str, conversation_id: str, count: int):
        await self._redis.hset(self._key("unread", user_id), conversation_id, max(count, 0))

    async def reset_unread(self, user_id: str, conversation_id: str):
        await self._redis.hset(self._key("unread", user_id), conversation_id, 0)

    async def get_unread_counts(self, user_id: str) -> dict[str, int]:
        data = await self._redis.hgetall(self._key("unread", user_id))
        return {cid: int(count) for cid, count in data.items()}

    # ── Messages ──────────────────────────────────────────

    async def cache_message(self, message: Message):
        list_key = self._key("conversation", message.conversation_id, "messages")
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key("message", message.id), message.model_dump_json(), ex=self._message_ttl)
            pipe.lrem(list_key, 0, message.id)
            pipe.lpush(list_key, message.id)
            pipe.ltrim(list_key, 0, RECENT_MESSAGES - 1)
            pipe.expire(list_key, self._message_ttl)
            await pipe.execute()

    async def get_message(self, message_id: str) -> Optional[dict[str, Any]]:
        raw = await self._redis.get(self._key("message", message_id))
        return json.loads(raw) if raw else None

    async def get_recent_messages(self, conversation_id: str, limit: int = 50) -> list[dict[str, Any]]:
        ids = await self._redis.lrange(self._key("conversation", conversation_id, "messages"), 0, limit - 1)
        if not ids:
            return []
        raws = await self._redis.mget([self._key("message", i) for i in ids])
        return [json.loads(raw) for raw in raws if raw]
