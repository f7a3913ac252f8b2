"""
SqlChatStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Portability notes:
  - Insert-or-ignore is a primary-key lookup plus an IntegrityError guard
    instead of dialect-specific ON CONFLICT / INSERT IGNORE.
  - Forward-only status moves and last_message_at advances are conditional
    UPDATEs, so the database enforces monotonicity under concurrent workers.
  - Datetime comparisons happen in SQL (SQLite returns naive datetimes).
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, and_, or_
from sqlalchemy.exc import IntegrityError

from database.models import (
    ConversationRow, ConversationParticipantRow, MessageRow,
    PresenceRow, SessionRow, DeviceTokenRow, TokenHistoryRow,
    NotificationTemplateRow, NotificationPreferenceRow, NotificationLogRow,
)
from database.session import Database
from database.store_base import BaseChatStore
from models.schemas import (
    DeviceToken, Message, MessageStatus, NotificationTemplate, PresenceRecord,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _targets(user_id: str):
    """Messages addressed to user_id, or group messages they did not send."""
    return or_(
        MessageRow.receiver_id == user_id,
        and_(MessageRow.receiver_id.is_(None), MessageRow.sender_id != user_id),
    )


class SqlChatStore(BaseChatStore):
    """
    Persistent chat store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, db: Database):
        self.db = db

    async def init(self) -> None:
        await self.db.init()

    async def close(self) -> None:
        await self.db.close()

    # ── Conversations ──────────────────────────────────────

    async def create_conversation(self, participant_ids: list[str], conversation_id: str = "",
                                  title: str = "") -> dict[str, Any]:
        async with self.db.session() as session:
            conv = await session.get(ConversationRow, conversation_id) if conversation_id else None
            if conv is None:
                conv = ConversationRow(title=title, is_group=len(participant_ids) > 2)
                if conversation_id:
                    conv.id = conversation_id
                session.add(conv)
                await session.flush()
            await self._ensure_participants(session, conv.id, participant_ids)
            conversation_id = conv.id
        return await self.get_conversation(conversation_id)

    @staticmethod
    async def _ensure_participants(session, conversation_id: str, user_ids: list[str]):
        result = await session.execute(
            select(ConversationParticipantRow.user_id)
            .where(ConversationParticipantRow.conversation_id == conversation_id)
        )
        existing = set(result.scalars().all())
        for user_id in user_ids:
            if user_id not in existing:
                session.add(ConversationParticipantRow(conversation_id=conversation_id, user_id=user_id))
                existing.add(user_id)
        await session.flush()

    async def get_conversation(self, conversation_id: str) -> Optional[dict[str, Any]]:
        async with self.db.session() as session:
            row = await session.get(ConversationRow, conversation_id)
            if not row:
                return None
            result = await session.execute(
                select(ConversationParticipantRow.user_id)
                .where(ConversationParticipantRow.conversation_id == conversation_id)
            )
            return {
                "id": row.id, "title": row.title, "is_group": row.is_group,
                "last_message_at": row.last_message_at,
                "created_at": row.created_at,
                "participant_ids": list(result.scalars().all()),
            }

    async def get_unread_count(self, conversation_id: str, user_id: str) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                select(ConversationParticipantRow.unread_count).where(and_(
                    ConversationParticipantRow.conversation_id == conversation_id,
                    ConversationParticipantRow.user_id == user_id,
                ))
            )
            return result.scalar_one_or_none() or 0

    # ── Messages ───────────────────────────────────────────

    async def persist_message(self, message: Message) -> Optional[list[str]]:
        try:
            async with self.db.session() as session:
                if await session.get(MessageRow, message.id) is not None:
                    return None

                if await session.get(ConversationRow, message.conversation_id) is None:
                    members = [message.sender_id] + ([message.receiver_id] if message.receiver_id else [])
                    session.add(ConversationRow(id=message.conversation_id))
                    await session.flush()
                    await self._ensure_participants(session, message.conversation_id, members)

                session.add(MessageRow(
                    id=message.id,
                    conversation_id=message.conversation_id,
                    sender_id=message.sender_id,
                    receiver_id=message.receiver_id,
                    type=message.type.value,
                    content=message.content,
                    status=message.status.value,
                    deleted=message.deleted,
                    created_at=message.created_at,
                ))
                await session.flush()

                await session.execute(
                    update(ConversationRow)
                    .where(and_(
                        ConversationRow.id == message.conversation_id,
                        or_(ConversationRow.last_message_at.is_(None),
                            ConversationRow.last_message_at < message.created_at),
                    ))
                    .values(last_message_at=message.created_at)
                )

                others = and_(
                    ConversationParticipantRow.conversation_id == message.conversation_id,
                    ConversationParticipantRow.user_id != message.sender_id,
                )
                result = await session.execute(select(ConversationParticipantRow.user_id).where(others))
                recipients = list(result.scalars().all())
                await session.execute(
                    update(ConversationParticipantRow)
                    .where(others)
                    .values(unread_count=ConversationParticipantRow.unread_count + 1)
                )
                return recipients
        except IntegrityError:
            # Lost an insert race with another worker holding a redelivered copy
            if await self.get_message(message.id) is not None:
                logger.info("message_duplicate_ignored", message_id=message.id)
                return None
            raise

    async def get_message(self, message_id: str) -> Optional[Message]:
        async with self.db.session() as session:
            row = await session.get(MessageRow, message_id)
            return self._row_to_message(row) if row else None

    async def get_conversation_messages(self, conversation_id: str, limit: int = 50) -> list[Message]:
        async with self.db.session() as session:
            stmt = (
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            rows = result.scalars().all()
            return [self._row_to_message(r) for r in reversed(rows)]

    async def _advance(self, session, condition, target: MessageStatus,
                       allowed: list[MessageStatus]) -> list[str]:
        where = and_(condition, MessageRow.status.in_([s.value for s in allowed]))
        result = await session.execute(select(MessageRow.id).where(where))
        ids = list(result.scalars().all())
        if ids:
            stamp = {"delivered_at": _utcnow()} if target == MessageStatus.DELIVERED else {"read_at": _utcnow()}
            await session.execute(
                update(MessageRow)
                .where(and_(MessageRow.id.in_(ids), MessageRow.status.in_([s.value for s in allowed])))
                .values(status=target.value, **stamp)
            )
        return ids

    async def mark_delivered(self, user_id: str, message_ids: list[str]) -> list[str]:
        if not message_ids:
            return []
        async with self.db.session() as session:
            return await self._advance(
                session,
                and_(MessageRow.id.in_(message_ids), _targets(user_id)),
                MessageStatus.DELIVERED, [MessageStatus.SENT],
            )

    async def mark_read(self, user_id: str, message_ids: list[str]) -> list[str]:
        if not message_ids:
            return []
        async with self.db.session() as session:
            return await self._advance(
                session,
                and_(MessageRow.id.in_(message_ids), _targets(user_id)),
                MessageStatus.READ, [MessageStatus.SENT, MessageStatus.DELIVERED],
            )

    async def mark_conversation_read(self, user_id: str, conversation_id: str) -> list[str]:
        async with self.db.session() as session:
            ids = await self._advance(
                session,
                and_(MessageRow.conversation_id == conversation_id, _targets(user_id)),
                MessageStatus.READ, [MessageStatus.SENT, MessageStatus.DELIVERED],
            )
            await session.execute(
                update(ConversationParticipantRow)
                .where(and_(
                    ConversationParticipantRow.conversation_id == conversation_id,
                    ConversationParticipantRow.user_id == user_id,
                ))
                .values(unread_count=0, last_read_at=_utcnow())
            )
            return ids

    # ── Presence & Sessions ────────────────────────────────

    @staticmethod
    async def _ensure_presence(session, user_ids: list[str]):
        result = await session.execute(select(PresenceRow.user_id).where(PresenceRow.user_id.in_(user_ids)))
        existing = set(result.scalars().all())
        for user_id in user_ids:
            if user_id not in existing:
                session.add(PresenceRow(user_id=user_id))
        await session.flush()

    async def mark_online(self, connections: dict[str, Optional[str]], at: datetime) -> None:
        if not connections:
            return
        user_ids = list(connections)
        async with self.db.session() as session:
            await self._ensure_presence(session, user_ids)
            await session.execute(
                update(PresenceRow)
                .where(PresenceRow.user_id.in_(user_ids))
                .values(is_online=True, last_seen=None, last_activity_at=at)
            )
            for user_id, connection_id in connections.items():
                if connection_id:
                    await session.execute(
                        update(PresenceRow)
                        .where(PresenceRow.user_id == user_id)
                        .values(connection_id=connection_id)
                    )

    async def mark_offline(self, user_ids: list[str], at: datetime) -> None:
        if not user_ids:
            return
        async with self.db.session() as session:
            await self._ensure_presence(session, user_ids)
            await session.execute(
                update(PresenceRow)
                .where(PresenceRow.user_id.in_(user_ids))
                .values(is_online=False, last_seen=at, last_activity_at=at, connection_id=None)
            )

    async def get_presence(self, user_id: str) -> Optional[PresenceRecord]:
        async with self.db.session() as session:
            row = await session.get(PresenceRow, user_id)
            return self._row_to_presence(row) if row else None

    async def set_invisible_mode(self, user_id: str, enabled: bool) -> PresenceRecord:
        async with self.db.session() as session:
            row = await session.get(PresenceRow, user_id)
            if row is None:
                row = PresenceRow(user_id=user_id, is_online=False)
                session.add(row)
            row.invisible_mode = enabled
            await session.flush()
            return self._row_to_presence(row)

    async def find_stale_online(self, cutoff: datetime) -> list[str]:
        async with self.db.session() as session:
            result = await session.execute(
                select(PresenceRow.user_id).where(and_(
                    PresenceRow.is_online.is_(True),
                    PresenceRow.last_activity_at < cutoff,
                ))
            )
            return list(result.scalars().all())

    async def touch_session(self, user_id: str, connection_id: str, at: datetime) -> None:
        async with self.db.session() as session:
            result = await session.execute(
                update(SessionRow)
                .where(and_(SessionRow.connection_id == connection_id, SessionRow.is_active.is_(True)))
                .values(last_activity_at=at)
            )
            if result.rowcount == 0:
                session.add(SessionRow(
                    user_id=user_id, connection_id=connection_id,
                    connected_at=at, last_activity_at=at,
                ))

    async def close_session(self, connection_id: str, at: datetime, reason: str = "disconnect") -> int:
        async with self.db.session() as session:
            result = await session.execute(
                update(SessionRow)
                .where(and_(SessionRow.connection_id == connection_id, SessionRow.is_active.is_(True)))
                .values(is_active=False, disconnected_at=at, logout_reason=reason)
            )
            return result.rowcount

    async def close_stale_sessions(self, cutoff: datetime, at: datetime,
                                   reason: str = "inactivity_timeout") -> int:
        live_users = select(PresenceRow.user_id).where(and_(
            PresenceRow.is_online.is_(True),
            PresenceRow.last_activity_at >= cutoff,
        ))
        async with self.db.session() as session:
            result = await session.execute(
                update(SessionRow)
                .where(and_(
                    SessionRow.is_active.is_(True),
                    SessionRow.last_activity_at < cutoff,
                    SessionRow.user_id.not_in(live_users),
                ))
                .values(is_active=False, disconnected_at=at, logout_reason=reason)
            )
            return result.rowcount

    async def get_sessions(self, user_id: str) -> list[dict[str, Any]]:
        async with self.db.session() as session:
            result = await session.execute(
                select(SessionRow).where(SessionRow.user_id == user_id).order_by(SessionRow.connected_at)
            )
            return [
                {
                    "id": r.id, "user_id": r.user_id, "connection_id": r.connection_id,
                    "is_active": r.is_active, "connected_at": r.connected_at,
                    "last_activity_at": r.last_activity_at,
                    "disconnected_at": r.disconnected_at, "logout_reason": r.logout_reason,
                }
                for r in result.scalars().all()
            ]

    # ── Device Tokens ──────────────────────────────────────

    async def register_device_token(self, token: DeviceToken) -> DeviceToken:
        async with self.db.session() as session:
            result = await session.execute(select(DeviceTokenRow).where(DeviceTokenRow.token == token.token))
            row = result.scalar_one_or_none()
            if row:
                row.user_id = token.user_id
                row.platform = token.platform.value
                row.device_id = token.device_id
                row.active = True
                row.last_used_at = _utcnow()
            else:
                row = DeviceTokenRow(
                    id=token.id, user_id=token.user_id, token=token.token,
                    platform=token.platform.value, device_id=token.device_id,
                    active=True, last_used_at=token.last_used_at or _utcnow(),
                )
                session.add(row)
            await session.flush()
            return self._row_to_token(row)

    async def get_active_tokens(self, user_id: str) -> list[DeviceToken]:
        async with self.db.session() as session:
            result = await session.execute(
                select(DeviceTokenRow).where(and_(
                    DeviceTokenRow.user_id == user_id,
                    DeviceTokenRow.active.is_(True),
                ))
            )
            return [self._row_to_token(r) for r in result.scalars().all()]

    async def get_device_token(self, token: str) -> Optional[DeviceToken]:
        async with self.db.session() as session:
            result = await session.execute(select(DeviceTokenRow).where(DeviceTokenRow.token == token))
            row = result.scalar_one_or_none()
            return self._row_to_token(row) if row else None

    async def touch_token(self, token: str, at: datetime) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(DeviceTokenRow).where(DeviceTokenRow.token == token).values(last_used_at=at)
            )

    async def deactivate_token(self, token: str) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                update(DeviceTokenRow)
                .where(and_(DeviceTokenRow.token == token, DeviceTokenRow.active.is_(True)))
                .values(active=False)
            )
            return result.rowcount > 0

    async def find_idle_tokens(self, cutoff: datetime) -> list[DeviceToken]:
        async with self.db.session() as session:
            result = await session.execute(
                select(DeviceTokenRow).where(and_(
                    DeviceTokenRow.active.is_(True),
                    DeviceTokenRow.last_used_at < cutoff,
                ))
            )
            return [self._row_to_token(r) for r in result.scalars().all()]

    async def record_token_history(self, user_id: str, token: str, token_type: str,
                                   action: str, metadata: dict = None) -> None:
        async with self.db.session() as session:
            session.add(TokenHistoryRow(
                user_id=user_id, token=token, token_type=token_type,
                action=action, metadata_=metadata or {},
            ))

    async def get_token_history(self, user_id: str) -> list[dict[str, Any]]:
        async with self.db.session() as session:
            result = await session.execute(
                select(TokenHistoryRow)
                .where(TokenHistoryRow.user_id == user_id)
                .order_by(TokenHistoryRow.created_at)
            )
            return [
                {
                    "id": r.id, "user_id": r.user_id, "token": r.token,
                    "token_type": r.token_type, "action": r.action,
                    "metadata": r.metadata_, "created_at": r.created_at,
                }
                for r in result.scalars().all()
            ]

    # ── Notification templates / preferences / logs ────────

    async def upsert_template(self, template: NotificationTemplate) -> None:
        async with self.db.session() as session:
            result = await session.execute(
                select(NotificationTemplateRow).where(and_(
                    NotificationTemplateRow.app_id == template.app_id,
                    NotificationTemplateRow.event_key == template.event_key,
                ))
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = NotificationTemplateRow(app_id=template.app_id, event_key=template.event_key)
                session.add(row)
            row.title = template.title
            row.body = template.body
            row.default_enabled = template.default_enabled
            row.priority = template.priority

    async def get_template(self, app_id: str, event_key: str) -> Optional[NotificationTemplate]:
        async with self.db.session() as session:
            result = await session.execute(
                select(NotificationTemplateRow).where(and_(
                    NotificationTemplateRow.app_id == app_id,
                    NotificationTemplateRow.event_key == event_key,
                ))
            )
            row = result.scalar_one_or_none()
            if not row:
                return None
            return NotificationTemplate(
                app_id=row.app_id, event_key=row.event_key, title=row.title, body=row.body,
                default_enabled=row.default_enabled, priority=row.priority,
            )

    async def set_preference(self, user_id: str, app_id: str, event_key: str, enabled: bool) -> None:
        async with self.db.session() as session:
            result = await session.execute(
                select(NotificationPreferenceRow).where(and_(
                    NotificationPreferenceRow.user_id == user_id,
                    NotificationPreferenceRow.app_id == app_id,
                    NotificationPreferenceRow.event_key == event_key,
                ))
            )
            row = result.scalar_one_or_none()
            if row:
                row.enabled = enabled
            else:
                session.add(NotificationPreferenceRow(
                    user_id=user_id, app_id=app_id, event_key=event_key, enabled=enabled,
                ))

    async def get_preference(self, user_id: str, app_id: str, event_key: str) -> Optional[bool]:
        async with self.db.session() as session:
            result = await session.execute(
                select(NotificationPreferenceRow.enabled).where(and_(
                    NotificationPreferenceRow.user_id == user_id,
                    NotificationPreferenceRow.app_id == app_id,
                    NotificationPreferenceRow.event_key == event_key,
                ))
            )
            return result.scalar_one_or_none()

    async def log_notification(self, entry: dict[str, Any]) -> None:
        async with self.db.session() as session:
            session.add(NotificationLogRow(
                operation_id=entry["operation_id"],
                user_id=entry["user_id"],
                app_id=entry.get("app_id", ""),
                event_key=entry.get("event_key", ""),
                title=entry.get("title", ""),
                body=entry.get("body", ""),
                status=entry["status"],
                error_details=entry.get("error_details", {}),
            ))

    async def get_notification_logs(self, operation_id: str = "", user_id: str = "") -> list[dict[str, Any]]:
        async with self.db.session() as session:
            stmt = select(NotificationLogRow).order_by(NotificationLogRow.created_at)
            if operation_id:
                stmt = stmt.where(NotificationLogRow.operation_id == operation_id)
            if user_id:
                stmt = stmt.where(NotificationLogRow.user_id == user_id)
            result = await session.execute(stmt)
            return [
                {
                    "id": r.id, "operation_id": r.operation_id, "user_id": r.user_id,
                    "app_id": r.app_id, "event_key": r.event_key,
                    "title": r.title, "body": r.body, "status": r.status,
                    "error_details": r.error_details, "created_at": r.created_at,
                }
                for r in result.scalars().all()
            ]

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_message(row: MessageRow) -> Message:
        return Message(
            id=row.id, conversation_id=row.conversation_id,
            sender_id=row.sender_id, receiver_id=row.receiver_id,
            type=row.type, content=row.content, status=row.status,
            deleted=row.deleted, created_at=row.created_at,
        )

    @staticmethod
    def _row_to_presence(row: PresenceRow) -> PresenceRecord:
        return PresenceRecord(
            user_id=row.user_id, is_online=bool(row.is_online),
            connection_id=row.connection_id, last_seen=row.last_seen,
            last_activity_at=row.last_activity_at,
            invisible_mode=bool(row.invisible_mode),
        )

    @staticmethod
    def _row_to_token(row: DeviceTokenRow) -> DeviceToken:
        return DeviceToken(
            id=row.id, user_id=row.user_id, token=row.token,
            platform=row.platform, device_id=row.device_id,
            active=row.active, last_used_at=row.last_used_at,
        )
