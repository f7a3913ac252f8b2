"""
FastAPI Application — thin enqueue surface over the chat delivery pipeline.

Provides:
- Message, receipt and presence producers (each returns as soon as the job is queued)
- Invisible mode and presence lookup
- Notification triggers and device token registration
- Queue depths, processing metrics, breaker states and the dead-letter queue

Consumers normally run in `python -m workers`; with the in-memory queue (or
workers.run_in_api) they also run inside this process.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config.settings import Settings, load_settings
from models.schemas import Message, MessageType, Platform
from workers.pipeline import ChatPipeline

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class MessageRequest(BaseModel):
    id: str = ""
    conversation_id: str
    sender_id: str
    receiver_id: Optional[str] = None
    type: MessageType = MessageType.TEXT
    content: Any = ""


class BatchMessageRequest(BaseModel):
    messages: list[MessageRequest]


class DeliveryReceiptRequest(BaseModel):
    user_id: str
    message_ids: list[str]


class ReadReceiptRequest(BaseModel):
    user_id: str
    message_ids: list[str] = []
    conversation_id: Optional[str] = None


class PresenceRequest(BaseModel):
    user_id: str
    is_online: bool
    connection_id: Optional[str] = None


class InvisibleModeRequest(BaseModel):
    user_id: str
    enabled: bool


class TriggerNotificationRequest(BaseModel):
    app_id: str = ""
    event_key: str
    recipients: list[str]
    data: dict[str, Any] = {}
    business_context: dict[str, Any] = {}


class DeviceTokenRequest(BaseModel):
    user_id: str
    token: str
    platform: Platform
    device_id: str = ""


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(settings: Settings = None, pipeline: ChatPipeline = None) -> FastAPI:
    """Build the API around an injected pipeline, or one built from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal pipeline
        cfg = settings or load_settings()
        if pipeline is None:
            pipeline = ChatPipeline(cfg)
        app.state.pipeline = pipeline

        consume = cfg.workers.run_in_api or cfg.queue.backend == "memory"
        if consume:
            await pipeline.start()
        else:
            await pipeline.connect()
        logger.info("chat_api_started", consumers_in_process=consume)
        yield

        await pipeline.stop()
        logger.info("chat_api_stopped")

    app = FastAPI(
        title="Chat Pipeline API",
        description="Asynchronous delivery pipeline for chat messages, presence and push notifications",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_routes(app)
    return app


def _pipeline(request: Request) -> ChatPipeline:
    return request.app.state.pipeline


def _register_routes(app: FastAPI):

    # ══════════════════════════════════════════════════════════
    #  HEALTH & DIAGNOSTICS
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        report = await _pipeline(request).health()
        open_breakers = [name for name, b in report["breakers"].items() if b.get("state") == "open"]
        return {
            "status": "degraded" if open_breakers else "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "queues": report["queues"],
            "open_breakers": open_breakers,
        }

    @app.get("/api/v1/queue/stats")
    async def queue_stats(request: Request):
        return await _pipeline(request).health()

    # ══════════════════════════════════════════════════════════
    #  MESSAGES & RECEIPTS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/messages", status_code=202)
    async def enqueue_message(req: MessageRequest, request: Request):
        message_id = await _pipeline(request).enqueue_message(Message(**req.model_dump()))
        return {"message_id": message_id, "status": "queued"}

    @app.post("/api/v1/messages/batch", status_code=202)
    async def enqueue_batch(req: BatchMessageRequest, request: Request):
        ids = await _pipeline(request).enqueue_batch_messages(
            [Message(**m.model_dump()) for m in req.messages]
        )
        return {"message_ids": ids, "status": "queued"}

    @app.post("/api/v1/receipts/delivery", status_code=202)
    async def delivery_receipt(req: DeliveryReceiptRequest, request: Request):
        job_id = await _pipeline(request).enqueue_delivery_receipt(req.user_id, req.message_ids)
        return {"job_id": job_id, "status": "queued"}

    @app.post("/api/v1/receipts/read", status_code=202)
    async def read_receipt(req: ReadReceiptRequest, request: Request):
        if not req.message_ids and not req.conversation_id:
            raise HTTPException(400, "message_ids or conversation_id is required")
        job_id = await _pipeline(request).enqueue_read_receipt(
            req.user_id, req.message_ids, req.conversation_id,
        )
        return {"job_id": job_id, "status": "queued"}

    @app.get("/api/v1/conversations/{conversation_id}/messages")
    async def recent_messages(conversation_id: str, request: Request, limit: int = Query(50, le=100)):
        pipeline = _pipeline(request)
        cached = await pipeline.cache.get_recent_messages(conversation_id, limit)
        if cached:
            return {"conversation_id": conversation_id, "source": "cache", "messages": cached}
        messages = await pipeline.store.get_conversation_messages(conversation_id, limit)
        return {
            "conversation_id": conversation_id,
            "source": "store",
            "messages": [m.model_dump(mode="json") for m in messages],
        }

    @app.get("/api/v1/users/{user_id}/unread")
    async def unread_counts(user_id: str, request: Request):
        return {"user_id": user_id, "unread": await _pipeline(request).cache.get_unread_counts(user_id)}

    # ══════════════════════════════════════════════════════════
    #  PRESENCE
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/presence", status_code=202)
    async def presence_update(req: PresenceRequest, request: Request):
        job_id = await _pipeline(request).enqueue_presence_update(
            req.user_id, req.is_online, req.connection_id,
        )
        return {"job_id": job_id, "status": "queued"}

    @app.post("/api/v1/presence/invisible")
    async def invisible_mode(req: InvisibleModeRequest, request: Request):
        return await _pipeline(request).set_invisible_mode(req.user_id, req.enabled)

    @app.get("/api/v1/presence/{user_id}")
    async def get_presence(user_id: str, request: Request):
        presence = await _pipeline(request).presence.get_presence(user_id)
        if presence is None:
            raise HTTPException(404, "No presence recorded for user")
        return presence

    # ══════════════════════════════════════════════════════════
    #  NOTIFICATIONS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/notifications/trigger", status_code=202)
    async def trigger_notification(req: TriggerNotificationRequest, request: Request):
        if not req.recipients:
            raise HTTPException(400, "recipients must not be empty")
        pipeline = _pipeline(request)
        operation_id = await pipeline.trigger_notification(
            req.app_id or pipeline.settings.notifications.default_app_id,
            req.event_key, req.recipients, req.data, req.business_context,
        )
        return {"operation_id": operation_id, "status": "queued"}

    @app.post("/api/v1/device-tokens", status_code=201)
    async def register_device_token(req: DeviceTokenRequest, request: Request):
        device = await _pipeline(request).dispatcher.register_device_token(
            req.user_id, req.token, req.platform.value, req.device_id,
        )
        return {"id": device.id, "user_id": device.user_id, "platform": device.platform.value,
                "active": device.active}

    # ══════════════════════════════════════════════════════════
    #  DEAD-LETTER QUEUE
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/queue/dead-letters")
    async def list_dead_letters(request: Request, count: int = Query(50, le=500)):
        jobs = await _pipeline(request).runtime.dead_letters(count)
        return {"count": len(jobs), "jobs": [j.to_dict() for j in jobs]}

    @app.post("/api/v1/queue/dead-letters/replay")
    async def replay_dead_letters(request: Request):
        replayed = await _pipeline(request).runtime.sweep_dead_letters()
        return {"replayed": replayed}

    @app.get("/api/v1/queue/{queue}/failed")
    async def failed_jobs(queue: str, request: Request, count: int = Query(100, le=1000)):
        jobs = await _pipeline(request).runtime.failed_jobs(queue, count)
        return {"queue": queue, "count": len(jobs), "jobs": [j.to_dict() for j in jobs]}


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
