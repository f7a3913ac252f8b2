"""In-memory cache backend for development and tests. TTLs are not enforced."""
from __future__ import annotations

import copy
import structlog
from collections import defaultdict, deque
from typing import Any, Optional

from cache.cache_base import BaseChatCache
from models.schemas import Message

logger = structlog.get_logger()


class InMemoryChatCache(BaseChatCache):

    def __init__(self, recent_limit: int = 100):
        self._presence: dict[str, dict[str, Any]] = {}
        self._unread: dict[str, dict[str, int]] = defaultdict(dict)
        self._messages: dict[str, dict[str, Any]] = {}
        self._recent: dict[str, deque[str]] = defaultdict(lambda: deque(maxlen=recent_limit))

    async def connect(self):
        logger.info("inmemory_cache_connected")

    async def close(self):
        pass

    async def get_presence(self, user_id: str) -> Optional[dict[str, Any]]:
        data = self._presence.get(user_id)
        return copy.deepcopy(data) if data else None

    async def set_presence(self, user_id: str, presence: dict[str, Any]):
        self._presence[user_id] = copy.deepcopy(presence)

    async def delete_presence(self, user_id: str):
        self._presence.pop(user_id, None)

    async def set_unread(self, user_id: str, conversation_id: str, count: int):
        self._unread[user_id][conversation_id] = max(count, 0)

    async def reset_unread(self, user_id: str, conversation_id: str):
        self._unread[user_id][conversation_id] = 0

    async def get_unread_counts(self, user_id: str) -> dict[str, int]:
        return dict(self._unread.get(user_id, {}))

    async def cache_message(self, message: Message):
        self._messages[message.id] = message.model_dump(mode="json")
        recent = self._recent[message.conversation_id]
        if message.id not in recent:
            recent.appendleft(message.id)

    async def get_message(self, message_id: str) -> Optional[dict[str, Any]]:
        data = self._messages.get(message_id)
        return dict(data) if data else None

    async def get_recent_messages(self, conversation_id: str, limit: int = 50) -> list[dict[str, Any]]:
        ids = list(self._recent.get(conversation_id, []))[:limit]
        return [dict(self._messages[i]) for i in ids if i in self._messages]
