"""
Database layer — Multi-backend persistence for the chat pipeline.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(settings.database)
  await store.init()
  recipients = await store.persist_message(message)
"""
from database.models import (
    Base, ConversationRow, ConversationParticipantRow, MessageRow,
    PresenceRow, SessionRow, DeviceTokenRow, TokenHistoryRow,
    NotificationTemplateRow, NotificationPreferenceRow, NotificationLogRow,
)
from database.session import Database
from database.store_base import BaseChatStore
from database.store import SqlChatStore
from database.store_memory import InMemoryChatStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "ConversationRow", "ConversationParticipantRow", "MessageRow",
    "PresenceRow", "SessionRow", "DeviceTokenRow", "TokenHistoryRow",
    "NotificationTemplateRow", "NotificationPreferenceRow", "NotificationLogRow",
    # Session management
    "Database",
    # Store interface
    "BaseChatStore",
    # Store backends
    "SqlChatStore", "InMemoryChatStore",
    # Factory
    "create_store",
]
