"""
FastAPI Application — Ingress for paced replies.

Provides:
- Inbound message processing (responder → staged, human-paced delivery)
- Direct scheduling of an already-written reply
- Health and release-queue diagnostics
- Lifespan management of the queue, event bus and release worker
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from config.settings import Settings, get_settings
from core.delayed_response import DelayedResponseService
from core.responder import Responder, ResponderError, create_responder
from core.scheduler import ActionScheduler, ScheduleError
from events.bus import EventBus, create_event_bus
from job_queue.consumer import ReleaseConsumer, ReleaseWorker
from job_queue.release_queue import ReleaseQueue, create_release_queue
from models.schemas import Channel, InboundMessage, ScheduleRequest
from personas.registry import PersonaStore, UnknownPersonaError, create_persona_store
from timing.model import estimate_token_count
from utils.clock import Clock, epoch_ms

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class InboundMessageRequest(BaseModel):
    tenant_id: str
    text: str
    source: Channel
    email_lc: Optional[str] = None
    phone_e164: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    persona_name: Optional[str] = None
    immediate: bool = False
    reason: str = ""


class ScheduleReplyRequest(BaseModel):
    tenant_id: str
    contact_pk: str
    conversation_id: Optional[str] = None
    channel: Channel
    persona_name: Optional[str] = None
    message_id: str
    reply_text: str
    inbound_text: str = ""


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(
    settings: Settings = None,
    queue: ReleaseQueue = None,
    bus: EventBus = None,
    personas: PersonaStore = None,
    responder: Responder = None,
    clock: Clock = epoch_ms,
    start_worker: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    max_delay_ms = settings.queue.max_delay_seconds * 1000

    queue = queue or create_release_queue(vars(settings.queue), clock=clock)
    bus = bus or create_event_bus(settings.event_bus)
    personas = personas or create_persona_store(settings.personas)
    responder = responder or create_responder(settings.responder)

    scheduler = ActionScheduler(
        queue, personas,
        timing_config=settings.timing,
        max_delay_ms=max_delay_ms,
        rollback_on_failure=settings.scheduler.rollback_on_failure,
        clock=clock,
    )
    consumer = ReleaseConsumer(
        bus, queue=queue,
        defer_tolerance_ms=settings.consumer.defer_tolerance_ms,
        max_delay_ms=max_delay_ms,
        clock=clock,
    )
    worker = ReleaseWorker(
        queue, consumer,
        batch_size=settings.consumer.batch_size,
        poll_interval_seconds=settings.consumer.poll_interval_seconds,
        concurrency=settings.consumer.concurrency,
        retry_delay_ms=settings.consumer.retry_delay_seconds * 1000,
    )
    service = (DelayedResponseService(responder, scheduler, bus,
                                      default_persona=settings.scheduler.default_persona,
                                      clock=clock)
               if responder else None)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await queue.connect()
        await bus.connect()
        if start_worker:
            await worker.start_background()
        logger.info("paced_replies_started",
                    queue_backend=type(queue).__name__,
                    bus_backend=type(bus).__name__,
                    responder=type(responder).__name__ if responder else None)
        yield
        await worker.stop()
        if responder:
            await responder.close()
        await bus.close()
        await queue.close()
        logger.info("paced_replies_stopped")

    app = FastAPI(
        title="Paced Replies API",
        description="Human-paced staged delivery of agent replies",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.scheduler = scheduler
    app.state.worker = worker
    app.state.queue = queue
    app.state.bus = bus

    # ══════════════════════════════════════════════════════════
    #  HEALTH & DIAGNOSTICS
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "app": settings.app_name,
            "queue_backend": type(queue).__name__,
            "bus_backend": type(bus).__name__,
            "worker_running": worker.running,
        }

    @app.get("/api/v1/queue/stats")
    async def queue_stats():
        return {
            "pending": await queue.queue_length(),
            "dead_lettered": await queue.dlq_length(),
            "worker_running": worker.running,
            "batches_processed": worker.batches_processed,
        }

    @app.get("/api/v1/personas")
    async def list_personas():
        return {"personas": personas.names()}

    # ══════════════════════════════════════════════════════════
    #  REPLIES
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/messages/inbound")
    async def inbound_message(req: InboundMessageRequest) -> dict[str, Any]:
        if service is None:
            raise HTTPException(503, "No responder configured")
        message = InboundMessage(**req.model_dump(exclude={"immediate", "reason"}))
        try:
            if req.immediate:
                return await service.process_message_immediate(message, reason=req.reason)
            result = await service.process_message_with_delayed_response(message)
        except UnknownPersonaError as e:
            raise HTTPException(404, str(e))
        except ResponderError as e:
            raise HTTPException(502, str(e))
        except ScheduleError as e:
            raise HTTPException(502, str(e))
        return {**result, "timing": result["timing"].model_dump()}

    @app.post("/api/v1/replies/schedule")
    async def schedule_reply(req: ScheduleReplyRequest) -> dict[str, Any]:
        request = ScheduleRequest(
            tenant_id=req.tenant_id,
            contact_pk=req.contact_pk,
            conversation_id=req.conversation_id,
            channel=req.channel,
            persona_name=req.persona_name or settings.scheduler.default_persona,
            message_id=req.message_id,
            reply_text=req.reply_text,
            input_chars=len(req.inbound_text),
            input_tokens=estimate_token_count(req.inbound_text),
        )
        try:
            timing = await scheduler.schedule_actions(request)
        except UnknownPersonaError as e:
            raise HTTPException(404, str(e))
        except ScheduleError as e:
            raise HTTPException(502, {"error": str(e),
                                      "enqueued": [k.value for k in e.enqueued],
                                      "rolled_back": e.rolled_back})
        return {"scheduled": True, "timing": timing.model_dump()}

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
