"""
Core data models for the chat delivery pipeline.
These are the universal types shared across all modules: chat entities,
queue payloads, and the typed results returned by the notification path.
"""
from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def can_advance_to(self, target: MessageStatus) -> bool:
        """Status only ever moves forward: sent → delivered → read."""
        return target.rank > self.rank


_STATUS_RANK = {
    MessageStatus.SENT: 0,
    MessageStatus.DELIVERED: 1,
    MessageStatus.READ: 2,
}


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"
    SYSTEM = "system"


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"


class PublicStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class DeliveryFailure(str, Enum):
    TOKEN_INVALID = "token_invalid"
    PROVIDER_ERROR = "provider_error"
    CIRCUIT_OPEN = "circuit_open"
    NO_PROVIDER = "no_provider"

    @property
    def retryable(self) -> bool:
        return self in (DeliveryFailure.PROVIDER_ERROR, DeliveryFailure.CIRCUIT_OPEN)


# ──────────────────────────────────────────────────────────────
#  Chat entities
# ──────────────────────────────────────────────────────────────

class Message(BaseModel):
    """A chat message as it travels through the message queue."""
    id: str = ""                              # caller-supplied; assigned at enqueue if empty
    conversation_id: str
    sender_id: str
    receiver_id: Optional[str] = None         # None for group conversations
    type: MessageType = MessageType.TEXT
    content: Any = ""                         # plain text or a structured body ({"text": ...})
    status: MessageStatus = MessageStatus.SENT
    deleted: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    queued_at: Optional[float] = None

    @property
    def text(self) -> str:
        if isinstance(self.content, dict):
            return str(self.content.get("text", ""))
        return str(self.content or "")


class DeliveryReceipt(BaseModel):
    user_id: str
    message_ids: list[str]


class ReadReceipt(BaseModel):
    user_id: str
    message_ids: list[str] = []
    conversation_id: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Presence
# ──────────────────────────────────────────────────────────────

class PresenceEvent(BaseModel):
    user_id: str
    is_online: bool
    connection_id: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)


class PresenceRecord(BaseModel):
    user_id: str
    is_online: bool = False
    connection_id: Optional[str] = None
    last_seen: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    invisible_mode: bool = False

    @property
    def public_status(self) -> PublicStatus:
        if self.invisible_mode or not self.is_online:
            return PublicStatus.OFFLINE
        return PublicStatus.ONLINE


# ──────────────────────────────────────────────────────────────
#  Notifications
# ──────────────────────────────────────────────────────────────

class DeviceToken(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    user_id: str
    token: str
    platform: Platform
    device_id: str = ""
    active: bool = True
    last_used_at: Optional[datetime] = None

    @property
    def token_type(self) -> str:
        return "APN" if self.platform == Platform.IOS else "FCM"

    @property
    def masked(self) -> str:
        return self.token[:10] + "..."


class NotificationTemplate(BaseModel):
    app_id: str
    event_key: str
    title: str
    body: str
    default_enabled: bool = True
    priority: str = "high"


class NotificationOperation(BaseModel):
    """Transient payload of the notifications queue."""
    operation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    app_id: str
    event_key: str
    recipients: list[str]
    data: dict[str, Any] = {}
    business_context: dict[str, Any] = {}
    isolated: bool = False                    # single-recipient retry of an earlier fan-out


class ProviderResult(BaseModel):
    """What a push provider reports for one send."""
    success: bool
    message_id: str = ""
    error_code: str = ""
    error: str = ""


class DeliveryResult(BaseModel):
    """Outcome of one device send. Never an exception for provider outcomes."""
    delivered: bool
    reason: Optional[DeliveryFailure] = None
    message_id: str = ""
    error: str = ""

    @property
    def retryable(self) -> bool:
        return bool(self.reason and self.reason.retryable)


class RecipientResult(BaseModel):
    recipient_id: str
    success: bool
    skipped: bool = False
    reason: str = ""
    retryable: bool = False
    devices_sent: int = 0
    devices_failed: int = 0
    tokens_revoked: int = 0


class FanOutReport(BaseModel):
    operation_id: str
    results: list[RecipientResult] = []

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success and not r.skipped)

    @property
    def retryable_recipients(self) -> list[str]:
        return [r.recipient_id for r in self.results if not r.success and r.retryable]
