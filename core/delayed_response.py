"""
Delayed Response Service — Replies with human-like pacing.

Flow for an inbound message:
  1. Ask the responder for reply text
  2. Stage the reply through the ActionScheduler (READ / TYPING / FINAL)
  3. Emit an agent.trace event with the computed timing
On failure an agent.error event is emitted and the error propagates.

process_message_immediate() skips the pacing entirely (human takeover,
urgent messages) and emits agent.reply.created right away.
"""
from __future__ import annotations

import structlog
from typing import Any

from core.responder import Responder
from core.scheduler import ActionScheduler
from events.bus import EventBus
from models.schemas import DetailType, InboundMessage, ScheduleRequest
from timing.model import estimate_token_count
from utils.clock import Clock, epoch_ms

logger = structlog.get_logger()


class DelayedResponseService:

    def __init__(
        self,
        responder: Responder,
        scheduler: ActionScheduler,
        bus: EventBus,
        default_persona: str = "Carlos",
        clock: Clock = epoch_ms,
    ):
        self.responder = responder
        self.scheduler = scheduler
        self.bus = bus
        self.default_persona = default_persona
        self._clock = clock

    async def process_message_with_delayed_response(self, message: InboundMessage) -> dict[str, Any]:
        persona = message.persona_name or self.default_persona
        try:
            reply = await self.responder.respond(message)

            request = ScheduleRequest(
                tenant_id=message.tenant_id,
                contact_pk=message.contact_pk,
                conversation_id=reply.conversation_id or message.conversation_id,
                channel=message.source,
                persona_name=persona,
                message_id=message.message_id or f"msg-{self._clock()}",
                reply_text=reply.text,
                input_chars=len(message.text),
                input_tokens=estimate_token_count(message.text),
            )
            timing = await self.scheduler.schedule_actions(request)
        except Exception as e:
            logger.error("delayed_response_failed",
                         tenant_id=message.tenant_id,
                         source=message.source.value,
                         error=str(e))
            await self._emit(DetailType.ERROR, {
                "tenantId": message.tenant_id,
                "contact_pk": message.contact_pk,
                "error": str(e),
                "context": {
                    "operation": "delayed_response_processing",
                    "source": message.source.value,
                    "messageLength": len(message.text),
                },
            })
            raise

        logger.info("delayed_response_scheduled",
                    tenant_id=message.tenant_id,
                    conversation_id=request.conversation_id,
                    persona=persona,
                    total_ms=timing.total_ms,
                    reply_length=len(reply.text))
        await self._emit(DetailType.TRACE, {
            "tenantId": message.tenant_id,
            "contact_pk": message.contact_pk,
            "operation": "delayed_response_scheduled",
            "metadata": {
                "timing": timing.model_dump(),
                "persona": persona,
                "channel": message.source.value,
                "inputLength": len(message.text),
                "replyLength": len(reply.text),
            },
        })

        return {
            "success": True,
            "timing": timing,
            "conversation_id": request.conversation_id,
            "message": "Response scheduled for delayed delivery",
        }

    async def process_message_immediate(self, message: InboundMessage, reason: str = "") -> dict[str, Any]:
        """Bypass pacing and publish the reply at once."""
        logger.info("immediate_response_requested",
                    tenant_id=message.tenant_id,
                    reason=reason or "emergency_bypass")
        reply = await self.responder.respond(message)
        conversation_id = reply.conversation_id or message.conversation_id
        payload = {
            "tenantId": message.tenant_id,
            "contact_pk": message.contact_pk,
            "preferredChannel": message.source.value,
            "text": reply.text,
            "routing": {},
            "metadata": {"bypass_reason": reason or "emergency_bypass"},
        }
        if conversation_id:
            payload["conversation_id"] = conversation_id
        await self.bus.publish(DetailType.REPLY_CREATED, payload)
        return {
            "success": True,
            "text": reply.text,
            "conversation_id": conversation_id,
            "message": "Response delivered immediately",
        }

    async def _emit(self, detail_type: str, detail: dict[str, Any]):
        """Publish telemetry; failures are logged and dropped."""
        try:
            await self.bus.publish(detail_type, detail)
        except Exception as e:
            logger.warning("telemetry_event_dropped", detail_type=detail_type, error=str(e))
