"""
Abstract Chat Cache — the fast key-value mirror read by the socket layer.

Mirrors:
  presence      user_id → presence dict (including the public status)
  unread        user_id → {conversation_id: count}
  messages      message_id → message dict, plus a recent list per conversation

The relational store is the source of truth; the cache may lag it but is
never written ahead of it.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import Message


class BaseChatCache(ABC):
    """Interface that all cache backends must implement."""

    @abstractmethod
    async def connect(self):
        ...

    @abstractmethod
    async def close(self):
        ...

    # ── Presence ──────────────────────────────────────────────

    @abstractmethod
    async def get_presence(self, user_id: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def set_presence(self, user_id: str, presence: dict[str, Any]):
        ...

    @abstractmethod
    async def delete_presence(self, user_id: str):
        ...

    # ── Unread counts ─────────────────────────────────────────

    @abstractmethod
    async def set_unread(self, user_id: str, conversation_id: str, count: int):
        """Overwrite the mirrored count with the value the store holds."""
        ...

    @abstractmethod
    async def reset_unread(self, user_id: str, conversation_id: str):
        ...

    @abstractmethod
    async def get_unread_counts(self, user_id: str) -> dict[str, int]:
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def cache_message(self, message: Message):
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def get_recent_messages(self, conversation_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Newest first."""
        ...
