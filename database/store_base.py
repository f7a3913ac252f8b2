"""
Abstract Chat Store — Interface for all relational storage backends.

Implementations:
  - SqlChatStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryChatStore (dict-based, single-process, no persistence)

Every write that must be atomic (message insert + conversation bump +
unread increments, conversation read + unread reset) is a single method so
each backend can run it in one transaction.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import DeviceToken, Message, NotificationTemplate, PresenceRecord


class BaseChatStore(ABC):
    """Interface that all chat store backends must implement."""

    async def init(self) -> None:
        """Prepare the backend (create tables, open pools)."""

    async def close(self) -> None:
        """Release backend resources."""

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def create_conversation(self, participant_ids: list[str], conversation_id: str = "",
                                  title: str = "") -> dict[str, Any]:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[dict[str, Any]]:
        """Conversation dict including participant_ids and last_message_at."""
        ...

    @abstractmethod
    async def get_unread_count(self, conversation_id: str, user_id: str) -> int:
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def persist_message(self, message: Message) -> Optional[list[str]]:
        """
        Insert the message unless a row with its id already exists.

        On a new insert, in the same transaction, advance the conversation's
        last_message_at and increment unread_count for every participant other
        than the sender. Returns the incremented participant ids, or None when
        the message was already stored.
        """
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def get_conversation_messages(self, conversation_id: str, limit: int = 50) -> list[Message]:
        ...

    @abstractmethod
    async def mark_delivered(self, user_id: str, message_ids: list[str]) -> list[str]:
        """Move the user's `sent` messages to `delivered`. Returns the updated ids."""
        ...

    @abstractmethod
    async def mark_read(self, user_id: str, message_ids: list[str]) -> list[str]:
        """Move the user's non-read messages to `read`. Returns the updated ids."""
        ...

    @abstractmethod
    async def mark_conversation_read(self, user_id: str, conversation_id: str) -> list[str]:
        """Mark every unread message of the user in the conversation read and zero its unread count."""
        ...

    # ── Presence & Sessions ───────────────────────────────────

    @abstractmethod
    async def mark_online(self, connections: dict[str, Optional[str]], at: datetime) -> None:
        """Grouped update: user_id → connection_id (None keeps the stored one)."""
        ...

    @abstractmethod
    async def mark_offline(self, user_ids: list[str], at: datetime) -> None:
        """Grouped update: offline, last_seen = at, connection cleared."""
        ...

    @abstractmethod
    async def get_presence(self, user_id: str) -> Optional[PresenceRecord]:
        ...

    @abstractmethod
    async def set_invisible_mode(self, user_id: str, enabled: bool) -> PresenceRecord:
        ...

    @abstractmethod
    async def find_stale_online(self, cutoff: datetime) -> list[str]:
        """Users still online whose last activity is older than cutoff."""
        ...

    @abstractmethod
    async def touch_session(self, user_id: str, connection_id: str, at: datetime) -> None:
        """Refresh the active session for connection_id, opening one if none exists."""
        ...

    @abstractmethod
    async def close_session(self, connection_id: str, at: datetime, reason: str = "disconnect") -> int:
        ...

    @abstractmethod
    async def close_stale_sessions(self, cutoff: datetime, at: datetime,
                                   reason: str = "inactivity_timeout") -> int:
        """
        Close active sessions idle since before cutoff, except those of users
        who are online with activity at or after cutoff on another connection.
        """
        ...

    @abstractmethod
    async def get_sessions(self, user_id: str) -> list[dict[str, Any]]:
        ...

    # ── Device Tokens ─────────────────────────────────────────

    @abstractmethod
    async def register_device_token(self, token: DeviceToken) -> DeviceToken:
        """Insert or reactivate a token (re-registration lifts a deactivation)."""
        ...

    @abstractmethod
    async def get_active_tokens(self, user_id: str) -> list[DeviceToken]:
        ...

    @abstractmethod
    async def get_device_token(self, token: str) -> Optional[DeviceToken]:
        ...

    @abstractmethod
    async def touch_token(self, token: str, at: datetime) -> None:
        ...

    @abstractmethod
    async def deactivate_token(self, token: str) -> bool:
        """Returns False when the token was unknown or already inactive."""
        ...

    @abstractmethod
    async def find_idle_tokens(self, cutoff: datetime) -> list[DeviceToken]:
        """Active tokens whose last use is older than cutoff."""
        ...

    @abstractmethod
    async def record_token_history(self, user_id: str, token: str, token_type: str,
                                   action: str, metadata: dict = None) -> None:
        ...

    @abstractmethod
    async def get_token_history(self, user_id: str) -> list[dict[str, Any]]:
        ...

    # ── Notification templates / preferences / logs ───────────

    @abstractmethod
    async def upsert_template(self, template: NotificationTemplate) -> None:
        ...

    @abstractmethod
    async def get_template(self, app_id: str, event_key: str) -> Optional[NotificationTemplate]:
        ...

    @abstractmethod
    async def set_preference(self, user_id: str, app_id: str, event_key: str, enabled: bool) -> None:
        ...

    @abstractmethod
    async def get_preference(self, user_id: str, app_id: str, event_key: str) -> Optional[bool]:
        """The user's explicit choice, or None when they never set one."""
        ...

    @abstractmethod
    async def log_notification(self, entry: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def get_notification_logs(self, operation_id: str = "", user_id: str = "") -> list[dict[str, Any]]:
        ...
