"""
End-to-end tests for ChatPipeline wiring, the HTTP API and the cluster supervisor.
"""
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from api.main import create_app
from config.settings import Settings
from models.schemas import MessageStatus, Platform
from notifications.providers import LogPushProvider
from workers.cli import build_parser
from workers.pipeline import ChatPipeline
from workers.supervisor import ClusterSupervisor


@pytest.fixture
def log_provider():
    return LogPushProvider()


@pytest_asyncio.fixture
async def pipeline(log_provider):
    p = ChatPipeline(Settings(), providers={Platform.ANDROID: log_provider, Platform.IOS: log_provider})
    await p.connect()
    p.register_handlers()
    yield p
    await p.stop()


class TestChatPipeline:
    @pytest.mark.asyncio
    async def test_message_flow_triggers_push(self, pipeline, log_provider):
        await pipeline.dispatcher.register_device_token("bob", "bob-device-token", "android")
        await pipeline.enqueue_message(
            {"id": "m1", "conversation_id": "c1", "sender_id": "alice", "receiver_id": "bob", "content": "hi"}
        )

        assert await pipeline.runtime.run_once("messages") == 1
        assert await pipeline.runtime.run_once("notifications") == 1

        [(token, payload)] = log_provider.sent
        assert token == "bob-device-token"
        assert payload["data"]["message_id"] == "m1"
        assert payload["body"] == "hi"

    @pytest.mark.asyncio
    async def test_receipts_and_presence(self, pipeline):
        await pipeline.enqueue_message(
            {"id": "m1", "conversation_id": "c1", "sender_id": "alice", "receiver_id": "bob"}
        )
        await pipeline.runtime.run_once("messages")
        await pipeline.enqueue_read_receipt("bob", conversation_id="c1")
        await pipeline.enqueue_presence_update("bob", True, "conn-1")
        await pipeline.runtime.run_once("receipts")
        await pipeline.runtime.run_once("presence")

        assert (await pipeline.store.get_message("m1")).status == MessageStatus.READ
        assert (await pipeline.presence.get_presence("bob"))["public_status"] == "online"

    @pytest.mark.asyncio
    async def test_generic_queue(self, pipeline):
        seen = []

        async def handler(job):
            seen.append(job.payload)

        pipeline.process("reports", handler)
        await pipeline.enqueue_job("reports", {"day": "2024-06-01"})
        await pipeline.runtime.run_once("reports")
        assert seen == [{"day": "2024-06-01"}]

    @pytest.mark.asyncio
    async def test_register_handlers_is_idempotent(self, pipeline):
        periodic = len(pipeline.runtime._periodic)
        pipeline.register_handlers()
        assert len(pipeline.runtime._periodic) == periodic

    @pytest.mark.asyncio
    async def test_health(self, pipeline):
        await pipeline.trigger_notification("chat", "new_message", ["bob"])
        report = await pipeline.health()
        assert report["queues"]["notifications"]["waiting"] == 1
        assert "dead-letter" in report["queues"]

    @pytest.mark.asyncio
    async def test_notifications_disabled(self):
        settings = Settings()
        settings.notifications.enabled = False
        p = ChatPipeline(settings, providers={})
        p.register_handlers()
        assert p.messages.notify is None
        assert "notifications" not in p.runtime._registrations


class TestApi:
    @pytest.fixture
    def client(self, log_provider):
        pipeline = ChatPipeline(Settings(), providers={Platform.ANDROID: log_provider})
        with TestClient(create_app(Settings(), pipeline)) as client:
            yield client

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert "messages" in body["queues"]

    def test_enqueue_message(self, client):
        resp = client.post("/api/v1/messages", json={
            "conversation_id": "c1", "sender_id": "alice", "receiver_id": "bob", "content": "hi",
        })
        assert resp.status_code == 202
        assert resp.json()["message_id"]

    def test_enqueue_batch(self, client):
        resp = client.post("/api/v1/messages/batch", json={"messages": [
            {"conversation_id": "c1", "sender_id": "alice", "content": "1"},
            {"id": "fixed", "conversation_id": "c1", "sender_id": "alice", "content": "2"},
        ]})
        assert resp.status_code == 202
        assert resp.json()["message_ids"][1] == "fixed"

    def test_invalid_message_rejected(self, client):
        assert client.post("/api/v1/messages", json={"sender_id": "alice"}).status_code == 422

    def test_read_receipt_requires_target(self, client):
        assert client.post("/api/v1/receipts/read", json={"user_id": "bob"}).status_code == 400
        assert client.post("/api/v1/receipts/read",
                           json={"user_id": "bob", "conversation_id": "c1"}).status_code == 202

    def test_delivery_receipt(self, client):
        resp = client.post("/api/v1/receipts/delivery", json={"user_id": "bob", "message_ids": ["m1"]})
        assert resp.status_code == 202

    def test_invisible_mode_and_presence_lookup(self, client):
        assert client.get("/api/v1/presence/nobody").status_code == 404
        body = client.post("/api/v1/presence/invisible", json={"user_id": "bob", "enabled": True}).json()
        assert body["public_status"] == "offline"
        assert client.get("/api/v1/presence/bob").json()["invisible_mode"] is True

    def test_presence_update(self, client):
        resp = client.post("/api/v1/presence", json={"user_id": "bob", "is_online": True})
        assert resp.status_code == 202

    def test_trigger_notification(self, client):
        assert client.post("/api/v1/notifications/trigger",
                           json={"event_key": "promo", "recipients": []}).status_code == 400
        resp = client.post("/api/v1/notifications/trigger",
                           json={"event_key": "promo", "recipients": ["bob"], "data": {"body": "50% off"}})
        assert resp.status_code == 202
        assert resp.json()["operation_id"]

    def test_device_token_registration(self, client):
        resp = client.post("/api/v1/device-tokens",
                           json={"user_id": "bob", "token": "abcdef123456", "platform": "android"})
        assert resp.status_code == 201
        assert resp.json()["active"] is True
        assert client.post("/api/v1/device-tokens",
                           json={"user_id": "bob", "token": "x", "platform": "windows"}).status_code == 422

    def test_dead_letter_endpoints(self, client):
        assert client.get("/api/v1/queue/dead-letters").json() == {"count": 0, "jobs": []}
        assert client.post("/api/v1/queue/dead-letters/replay").json() == {"replayed": 0}
        assert client.get("/api/v1/queue/notifications/failed").json()["count"] == 0

    def test_queue_stats(self, client):
        body = client.get("/api/v1/queue/stats").json()
        assert set(body) == {"queues", "breakers", "metrics"}


# ──────────────────────────────────────────────────────────────
#  Cluster supervisor (process handles faked)
# ──────────────────────────────────────────────────────────────

class FakeProcess:
    _next_pid = 100

    def __init__(self, target=None, args=(), name=""):
        self.args = args
        self.name = name
        self.alive = False
        self.exitcode = None
        self.pid = None
        self.terminated = False

    def start(self):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.alive = True

    def is_alive(self):
        return self.alive

    def terminate(self):
        self.terminated = True
        self.alive = False
        self.exitcode = -15

    def kill(self):
        self.alive = False

    def join(self, timeout=None):
        pass


class FakeContext:
    def __init__(self):
        self.processes = []

    def Process(self, target=None, args=(), name=""):
        proc = FakeProcess(target, args, name)
        self.processes.append(proc)
        return proc


class TestClusterSupervisor:
    def _supervisor(self, **kwargs):
        ctx = FakeContext()
        opts = dict(worker_count=2, restart_delay=1.0, target=lambda *a: None, args=("cfg.yaml",), context=ctx)
        opts.update(kwargs)
        return ClusterSupervisor(**opts), ctx

    def test_start_spawns_workers_with_index(self):
        sup, ctx = self._supervisor()
        sup.start()
        assert len(ctx.processes) == 2
        assert [p.args for p in ctx.processes] == [("cfg.yaml", 0), ("cfg.yaml", 1)]

    def test_dead_worker_restarted_after_delay(self):
        sup, ctx = self._supervisor()
        sup.start()
        ctx.processes[0].alive = False
        ctx.processes[0].exitcode = 1

        assert sup.check_workers(now=10.0) == 0
        assert sup.check_workers(now=10.5) == 0
        assert sup.check_workers(now=11.0) == 1
        assert len(ctx.processes) == 3
        assert sup.workers[0] is ctx.processes[2]
        assert sup.restarts == 1

    def test_no_restart_after_shutdown(self):
        sup, ctx = self._supervisor()
        sup.start()
        sup.shutdown()
        assert all(p.terminated for p in ctx.processes)
        assert sup.check_workers(now=100.0) == 0
        assert len(ctx.processes) == 2

    def test_worker_count_at_least_one(self):
        sup, _ = self._supervisor(worker_count=0)
        assert sup.worker_count == 1


class TestCli:
    def test_parser(self):
        args = build_parser().parse_args(["--workers", "3", "--config", "x.yaml"])
        assert args.workers == 3
        assert args.config == "x.yaml"
        assert args.single is False
