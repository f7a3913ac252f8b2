"""
Tests for SqlChatStore via SQLite (aiosqlite) for test portability.

Covers:
  - Insert-or-ignore persistence and unread counters
  - Forward-only receipts and targeting
  - Presence, sessions and stale detection
  - Device tokens, history, templates, preferences and notification logs
  - Store factory and URL translation
"""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone

from config.settings import DatabaseConfig
from database.session import Database, _to_async_url
from database.store import SqlChatStore
from database.store_factory import create_store
from database.store_memory import InMemoryChatStore
from models.schemas import DeviceToken, Message, MessageStatus, NotificationTemplate, Platform


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    store = SqlChatStore(Database(f"sqlite:///{tmp_path}/chat.db"))
    await store.init()
    yield store
    await store.close()


def _message(mid, **kwargs) -> Message:
    data = {"id": mid, "conversation_id": "c1", "sender_id": "alice", "receiver_id": "bob", "content": "hi"}
    data.update(kwargs)
    return Message(**data)


class TestSqlMessages:
    @pytest.mark.asyncio
    async def test_persist_creates_conversation(self, sql_store):
        recipients = await sql_store.persist_message(_message("m1"))
        assert recipients == ["bob"]
        conv = await sql_store.get_conversation("c1")
        assert sorted(conv["participant_ids"]) == ["alice", "bob"]
        assert conv["last_message_at"] is not None

    @pytest.mark.asyncio
    async def test_duplicate_is_ignored(self, sql_store):
        await sql_store.persist_message(_message("m1"))
        assert await sql_store.persist_message(_message("m1", content="changed")) is None
        assert await sql_store.get_unread_count("c1", "bob") == 1
        assert (await sql_store.get_message("m1")).content == "hi"

    @pytest.mark.asyncio
    async def test_group_unread(self, sql_store):
        await sql_store.create_conversation(["alice", "bob", "carol"], conversation_id="g1", title="team")
        recipients = await sql_store.persist_message(_message("g1m", conversation_id="g1", receiver_id=None))
        assert sorted(recipients) == ["bob", "carol"]
        assert await sql_store.get_unread_count("g1", "carol") == 1
        assert (await sql_store.get_conversation("g1"))["is_group"] is True

    @pytest.mark.asyncio
    async def test_structured_content_round_trips(self, sql_store):
        await sql_store.persist_message(_message("m1", content={"text": "hi", "attachments": [1]}))
        stored = await sql_store.get_message("m1")
        assert stored.content == {"text": "hi", "attachments": [1]}
        assert stored.text == "hi"

    @pytest.mark.asyncio
    async def test_conversation_messages_oldest_first(self, sql_store):
        base = datetime(2024, 6, 1, tzinfo=timezone.utc)
        for i in range(3):
            await sql_store.persist_message(_message(f"m{i}", created_at=base + timedelta(minutes=i)))
        messages = await sql_store.get_conversation_messages("c1", limit=2)
        assert [m.id for m in messages] == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_receipts_are_forward_only(self, sql_store):
        await sql_store.persist_message(_message("m1"))
        await sql_store.persist_message(_message("m2"))

        assert await sql_store.mark_delivered("alice", ["m1"]) == []
        assert await sql_store.mark_delivered("bob", ["m1"]) == ["m1"]
        assert await sql_store.mark_read("bob", ["m1", "m2"]) in (["m1", "m2"], ["m2", "m1"])
        assert await sql_store.mark_delivered("bob", ["m1", "m2"]) == []
        assert (await sql_store.get_message("m1")).status == MessageStatus.READ

    @pytest.mark.asyncio
    async def test_conversation_read(self, sql_store):
        await sql_store.persist_message(_message("m1"))
        await sql_store.persist_message(_message("m2"))
        updated = await sql_store.mark_conversation_read("bob", "c1")
        assert sorted(updated) == ["m1", "m2"]
        assert await sql_store.get_unread_count("c1", "bob") == 0
        assert await sql_store.mark_conversation_read("bob", "c1") == []


class TestSqlPresence:
    @pytest.mark.asyncio
    async def test_online_offline(self, sql_store, now):
        await sql_store.mark_online({"u1": "conn-1", "u2": None}, now)
        assert (await sql_store.get_presence("u1")).connection_id == "conn-1"
        assert (await sql_store.get_presence("u2")).is_online is True

        await sql_store.mark_offline(["u1"], now + timedelta(minutes=1))
        record = await sql_store.get_presence("u1")
        assert record.is_online is False
        assert record.connection_id is None
        assert record.last_seen is not None

    @pytest.mark.asyncio
    async def test_find_stale_online(self, sql_store, now):
        await sql_store.mark_online({"old": None}, now - timedelta(hours=2))
        await sql_store.mark_online({"fresh": None}, now)
        assert await sql_store.find_stale_online(now - timedelta(minutes=30)) == ["old"]

    @pytest.mark.asyncio
    async def test_invisible_mode(self, sql_store, now):
        await sql_store.mark_online({"u1": "conn-1"}, now)
        record = await sql_store.set_invisible_mode("u1", True)
        assert record.invisible_mode is True
        assert record.public_status.value == "offline"
        new = await sql_store.set_invisible_mode("stranger", True)
        assert new.is_online is False

    @pytest.mark.asyncio
    async def test_sessions(self, sql_store, now):
        await sql_store.touch_session("u1", "conn-1", now)
        await sql_store.touch_session("u1", "conn-1", now + timedelta(minutes=5))
        await sql_store.touch_session("u1", "conn-2", now)
        assert len(await sql_store.get_sessions("u1")) == 2

        assert await sql_store.close_session("conn-1", now + timedelta(minutes=6)) == 1
        assert await sql_store.close_session("conn-1", now + timedelta(minutes=7)) == 0
        closed = await sql_store.close_stale_sessions(now + timedelta(minutes=1), now + timedelta(hours=1))
        assert closed == 1
        reasons = {s["connection_id"]: s["logout_reason"] for s in await sql_store.get_sessions("u1")}
        assert reasons == {"conn-1": "disconnect", "conn-2": "inactivity_timeout"}

    @pytest.mark.asyncio
    async def test_stale_sessions_of_live_user_kept(self, sql_store, now):
        await sql_store.touch_session("u1", "conn-old", now - timedelta(hours=2))
        await sql_store.touch_session("u2", "conn-old2", now - timedelta(hours=2))
        await sql_store.mark_online({"u1": "conn-new"}, now)

        closed = await sql_store.close_stale_sessions(now - timedelta(minutes=30), now)

        assert closed == 1
        assert [s["is_active"] for s in await sql_store.get_sessions("u1")] == [True]
        assert [s["is_active"] for s in await sql_store.get_sessions("u2")] == [False]


class TestSqlTokensAndNotifications:
    @pytest.mark.asyncio
    async def test_token_lifecycle(self, sql_store):
        device = await sql_store.register_device_token(
            DeviceToken(user_id="bob", token="tok-1", platform=Platform.ANDROID)
        )
        assert device.active is True
        assert [t.token for t in await sql_store.get_active_tokens("bob")] == ["tok-1"]

        assert await sql_store.deactivate_token("tok-1") is True
        assert await sql_store.deactivate_token("tok-1") is False
        assert await sql_store.get_active_tokens("bob") == []

        again = await sql_store.register_device_token(
            DeviceToken(user_id="carol", token="tok-1", platform=Platform.IOS)
        )
        assert again.active is True
        assert again.user_id == "carol"

    @pytest.mark.asyncio
    async def test_find_idle_tokens(self, sql_store):
        await sql_store.register_device_token(DeviceToken(user_id="bob", token="old", platform=Platform.IOS))
        await sql_store.register_device_token(DeviceToken(user_id="bob", token="new", platform=Platform.IOS))
        cutoff = datetime.now(timezone.utc) - timedelta(days=30)
        await sql_store.touch_token("old", cutoff - timedelta(days=1))

        idle = await sql_store.find_idle_tokens(cutoff)
        assert [t.token for t in idle] == ["old"]

    @pytest.mark.asyncio
    async def test_token_history(self, sql_store):
        await sql_store.record_token_history("bob", "tok-1", "FCM", "REVOKED", {"reason": "UNREGISTERED"})
        [entry] = await sql_store.get_token_history("bob")
        assert entry["action"] == "REVOKED"
        assert entry["metadata"] == {"reason": "UNREGISTERED"}

    @pytest.mark.asyncio
    async def test_templates_and_preferences(self, sql_store):
        template = NotificationTemplate(app_id="chat", event_key="new_message", title="t", body="b")
        await sql_store.upsert_template(template)
        await sql_store.upsert_template(template.model_copy(update={"title": "t2"}))
        assert (await sql_store.get_template("chat", "new_message")).title == "t2"
        assert await sql_store.get_template("chat", "nope") is None

        assert await sql_store.get_preference("bob", "chat", "new_message") is None
        await sql_store.set_preference("bob", "chat", "new_message", False)
        await sql_store.set_preference("bob", "chat", "new_message", True)
        assert await sql_store.get_preference("bob", "chat", "new_message") is True

    @pytest.mark.asyncio
    async def test_notification_logs(self, sql_store):
        await sql_store.log_notification({"operation_id": "op1", "user_id": "bob", "status": "sent"})
        await sql_store.log_notification({"operation_id": "op1", "user_id": "carol", "status": "failed",
                                          "error_details": {"reason": "no_tokens"}})
        await sql_store.log_notification({"operation_id": "op2", "user_id": "bob", "status": "skipped"})

        assert len(await sql_store.get_notification_logs(operation_id="op1")) == 2
        [carol] = await sql_store.get_notification_logs(user_id="carol")
        assert carol["error_details"] == {"reason": "no_tokens"}


class TestStoreFactory:
    def test_memory_default(self):
        assert isinstance(create_store(), InMemoryChatStore)

    def test_sql_backend(self, tmp_path):
        store = create_store(DatabaseConfig(url=f"sqlite:///{tmp_path}/x.db", store_backend="sql"))
        assert isinstance(store, SqlChatStore)
        assert store.db.url.startswith("sqlite+aiosqlite://")


class TestSessionUrlTranslation:
    def test_postgres(self):
        assert _to_async_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
        assert _to_async_url("postgres://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"

    def test_mysql(self):
        assert _to_async_url("mysql://u:p@h/db") == "mysql+aiomysql://u:p@h/db"

    def test_sqlite(self):
        assert _to_async_url("sqlite:///./test.db") == "sqlite+aiosqlite:///./test.db"

    def test_already_async(self):
        assert _to_async_url("postgresql+asyncpg://h/db") == "postgresql+asyncpg://h/db"
