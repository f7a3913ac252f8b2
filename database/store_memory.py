"""
InMemoryChatStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlChatStore
  - Atomic per call via asyncio (single event loop, no awaits mid-update)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import uuid
import structlog
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import BaseChatStore
from models.schemas import (
    DeviceToken, Message, MessageStatus, NotificationTemplate, PresenceRecord,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def _targets(message: Message, user_id: str) -> bool:
    """A receipt from user_id applies to messages addressed to them, or group messages they did not send."""
    if message.receiver_id is not None:
        return message.receiver_id == user_id
    return message.sender_id != user_id


class InMemoryChatStore(BaseChatStore):
    """
    Full-featured in-memory store with the same interface as SqlChatStore.
    Returns copies so callers never mutate stored state.
    """

    def __init__(self):
        self._conversations: dict[str, dict] = {}                    # id → conversation dict
        self._participants: dict[str, dict[str, int]] = {}           # conv_id → {user_id: unread}
        self._messages: dict[str, Message] = {}                      # id → message
        self._by_conversation: dict[str, list[str]] = defaultdict(list)  # conv_id → [msg ids]
        self._presence: dict[str, PresenceRecord] = {}
        self._sessions: dict[str, dict] = {}                         # session id → session dict
        self._tokens: dict[str, DeviceToken] = {}                    # token → device token
        self._token_history: list[dict] = []
        self._templates: dict[tuple[str, str], NotificationTemplate] = {}
        self._preferences: dict[tuple[str, str, str], bool] = {}
        self._notification_logs: list[dict] = []
        logger.info("inmemory_store_initialized")

    # ── Conversations ─────────────────────────────────────

    async def create_conversation(self, participant_ids: list[str], conversation_id: str = "",
                                  title: str = "") -> dict[str, Any]:
        conversation_id = conversation_id or _new_id()
        if conversation_id not in self._conversations:
            self._conversations[conversation_id] = {
                "id": conversation_id, "title": title,
                "is_group": len(participant_ids) > 2,
                "last_message_at": None, "created_at": _utcnow(),
            }
            self._participants[conversation_id] = {}
        members = self._participants[conversation_id]
        for user_id in participant_ids:
            members.setdefault(user_id, 0)
        return await self.get_conversation(conversation_id)

    async def get_conversation(self, conversation_id: str) -> Optional[dict[str, Any]]:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            return None
        return {**conv, "participant_ids": list(self._participants.get(conversation_id, {}))}

    async def get_unread_count(self, conversation_id: str, user_id: str) -> int:
        return self._participants.get(conversation_id, {}).get(user_id, 0)

    # ── Messages ──────────────────────────────────────────

    async def persist_message(self, message: Message) -> Optional[list[str]]:
        if message.id in self._messages:
            return None

        if message.conversation_id not in self._conversations:
            members = [message.sender_id] + ([message.receiver_id] if message.receiver_id else [])
            await self.create_conversation(members, conversation_id=message.conversation_id)

        self._messages[message.id] = message.model_copy(deep=True)
        self._by_conversation[message.conversation_id].append(message.id)

        conv = self._conversations[message.conversation_id]
        if conv["last_message_at"] is None or message.created_at > conv["last_message_at"]:
            conv["last_message_at"] = message.created_at

        members = self._participants[message.conversation_id]
        recipients = [uid for uid in members if uid != message.sender_id]
        for uid in recipients:
            members[uid] += 1
        return recipients

    async def get_message(self, message_id: str) -> Optional[Message]:
        msg = self._messages.get(message_id)
        return msg.model_copy(deep=True) if msg else None

    async def get_conversation_messages(self, conversation_id: str, limit: int = 50) -> list[Message]:
        ids = self._by_conversation.get(conversation_id, [])
        msgs = sorted((self._messages[i] for i in ids), key=lambda m: m.created_at)
        return [m.model_copy(deep=True) for m in msgs[-limit:]]

    def _advance(self, user_id: str, message_ids: list[str], target: MessageStatus,
                 allowed: tuple[MessageStatus, ...]) -> list[str]:
        updated = []
        for mid in message_ids:
            msg = self._messages.get(mid)
            if msg is None or not _targets(msg, user_id):
                continue
            if msg.status in allowed:
                msg.status = target
                updated.append(mid)
        return updated

    async def mark_delivered(self, user_id: str, message_ids: list[str]) -> list[str]:
        return self._advance(user_id, message_ids, MessageStatus.DELIVERED, (MessageStatus.SENT,))

    async def mark_read(self, user_id: str, message_ids: list[str]) -> list[str]:
        return self._advance(user_id, message_ids, MessageStatus.READ,
                             (MessageStatus.SENT, MessageStatus.DELIVERED))

    async def mark_conversation_read(self, user_id: str, conversation_id: str) -> list[str]:
        updated = self._advance(user_id, self._by_conversation.get(conversation_id, []),
                                MessageStatus.READ, (MessageStatus.SENT, MessageStatus.DELIVERED))
        members = self._participants.get(conversation_id)
        if members is not None and user_id in members:
            members[user_id] = 0
        return updated

    # ── Presence & Sessions ───────────────────────────────

    def _presence_row(self, user_id: str) -> PresenceRecord:
        if user_id not in self._presence:
            self._presence[user_id] = PresenceRecord(user_id=user_id)
        return self._presence[user_id]

    async def mark_online(self, connections: dict[str, Optional[str]], at: datetime) -> None:
        for user_id, connection_id in connections.items():
            row = self._presence_row(user_id)
            row.is_online = True
            row.last_seen = None
            row.last_activity_at = at
            if connection_id:
                row.connection_id = connection_id

    async def mark_offline(self, user_ids: list[str], at: datetime) -> None:
        for user_id in user_ids:
            row = self._presence_row(user_id)
            row.is_online = False
            row.last_seen = at
            row.last_activity_at = at
            row.connection_id = None

    async def get_presence(self, user_id: str) -> Optional[PresenceRecord]:
        row = self._presence.get(user_id)
        return row.model_copy() if row else None

    async def set_invisible_mode(self, user_id: str, enabled: bool) -> PresenceRecord:
        row = self._presence_row(user_id)
        row.invisible_mode = enabled
        return row.model_copy()

    async def find_stale_online(self, cutoff: datetime) -> list[str]:
        return [
            row.user_id for row in self._presence.values()
            if row.is_online and row.last_activity_at is not None and row.last_activity_at < cutoff
        ]

    async def touch_session(self, user_id: str, connection_id: str, at: datetime) -> None:
        for session in self._sessions.values():
            if session["connection_id"] == connection_id and session["is_active"]:
                session["last_activity_at"] = at
                return
        sid = _new_id()
        self._sessions[sid] = {
            "id": sid, "user_id": user_id, "connection_id": connection_id,
            "is_active": True, "connected_at": at, "last_activity_at": at,
            "disconnected_at": None, "logout_reason": "",
        }

    async def close_session(self, connection_id: str, at: datetime, reason: str = "disconnect") -> int:
        closed = 0
        for session in self._sessions.values():
            if session["connection_id"] == connection_id and session["is_active"]:
                session.update(is_active=False, disconnected_at=at, logout_reason=reason)
                closed += 1
        return closed

    async def close_stale_sessions(self, cutoff: datetime, at: datetime,
                                   reason: str = "inactivity_timeout") -> int:
        live = {
            row.user_id for row in self._presence.values()
            if row.is_online and row.last_activity_at is not None and row.last_activity_at >= cutoff
        }
        closed = 0
        for session in self._sessions.values():
            if session["is_active"] and session["last_activity_at"] < cutoff and session["user_id"] not in live:
                session.update(is_active=False, disconnected_at=at, logout_reason=reason)
                closed += 1
        return closed

    async def get_sessions(self, user_id: str) -> list[dict[str, Any]]:
        return [dict(s) for s in self._sessions.values() if s["user_id"] == user_id]

    # ── Device Tokens ─────────────────────────────────────

    async def register_device_token(self, token: DeviceToken) -> DeviceToken:
        existing = self._tokens.get(token.token)
        if existing:
            existing.user_id = token.user_id
            existing.platform = token.platform
            existing.device_id = token.device_id
            existing.active = True
            existing.last_used_at = _utcnow()
            return existing.model_copy()
        row = token.model_copy(update={"active": True, "last_used_at": token.last_used_at or _utcnow()})
        self._tokens[token.token] = row
        return row.model_copy()

    async def get_active_tokens(self, user_id: str) -> list[DeviceToken]:
        return [t.model_copy() for t in self._tokens.values() if t.user_id == user_id and t.active]

    async def get_device_token(self, token: str) -> Optional[DeviceToken]:
        row = self._tokens.get(token)
        return row.model_copy() if row else None

    async def touch_token(self, token: str, at: datetime) -> None:
        row = self._tokens.get(token)
        if row:
            row.last_used_at = at

    async def deactivate_token(self, token: str) -> bool:
        row = self._tokens.get(token)
        if row is None or not row.active:
            return False
        row.active = False
        return True

    async def find_idle_tokens(self, cutoff: datetime) -> list[DeviceToken]:
        return [
            row.model_copy() for row in self._tokens.values()
            if row.active and row.last_used_at is not None and row.last_used_at < cutoff
        ]

    async def record_token_history(self, user_id: str, token: str, token_type: str,
                                   action: str, metadata: dict = None) -> None:
        self._token_history.append({
            "id": _new_id(), "user_id": user_id, "token": token,
            "token_type": token_type, "action": action,
            "metadata": metadata or {}, "created_at": _utcnow(),
        })

    async def get_token_history(self, user_id: str) -> list[dict[str, Any]]:
        return [dict(h) for h in self._token_history if h["user_id"] == user_id]

    # ── Notification templates / preferences / logs ──────

    async def upsert_template(self, template: NotificationTemplate) -> None:
        self._templates[(template.app_id, template.event_key)] = template.model_copy()

    async def get_template(self, app_id: str, event_key: str) -> Optional[NotificationTemplate]:
        tpl = self._templates.get((app_id, event_key))
        return tpl.model_copy() if tpl else None

    async def set_preference(self, user_id: str, app_id: str, event_key: str, enabled: bool) -> None:
        self._preferences[(user_id, app_id, event_key)] = enabled

    async def get_preference(self, user_id: str, app_id: str, event_key: str) -> Optional[bool]:
        return self._preferences.get((user_id, app_id, event_key))

    async def log_notification(self, entry: dict[str, Any]) -> None:
        self._notification_logs.append({"id": _new_id(), "created_at": _utcnow(), **entry})

    async def get_notification_logs(self, operation_id: str = "", user_id: str = "") -> list[dict[str, Any]]:
        return [
            dict(log) for log in self._notification_logs
            if (not operation_id or log["operation_id"] == operation_id)
            and (not user_id or log["user_id"] == user_id)
        ]

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "conversations": len(self._conversations),
            "messages": len(self._messages),
            "presence": len(self._presence),
            "sessions": len(self._sessions),
            "device_tokens": len(self._tokens),
            "notification_logs": len(self._notification_logs),
        }
