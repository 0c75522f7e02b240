"""
Tests — Delayed Response Service

Responder is mocked with AsyncMock; the scheduler runs against a
recording queue so the staged actions can be inspected.

Run:
  pytest tests/test_delayed_response.py -v
"""
import pytest
from unittest.mock import AsyncMock

from conftest import RecordingQueue
from core.delayed_response import DelayedResponseService
from core.responder import ResponderError
from core.scheduler import ActionScheduler, ScheduleError
from models.schemas import Channel, DetailType, InboundMessage, ResponderReply


@pytest.fixture
def responder():
    mock = AsyncMock()
    mock.respond.return_value = ResponderReply(text="Sure, I can help with that.",
                                               conversation_id="conv-9")
    return mock


@pytest.fixture
def inbound() -> InboundMessage:
    return InboundMessage(
        tenant_id="t1",
        text="Hi, is the apartment still available?",
        source=Channel.CHAT,
        email_lc="lead@example.com",
        message_id="m1",
    )


@pytest.fixture
def service(responder, scheduler, bus, clock) -> DelayedResponseService:
    return DelayedResponseService(responder, scheduler, bus, default_persona="Steady", clock=clock)


class TestDelayedResponse:

    @pytest.mark.asyncio
    async def test_schedules_reply_and_traces(self, service, responder, recording_queue, bus, inbound):
        result = await service.process_message_with_delayed_response(inbound)

        assert result["success"] is True
        assert result["conversation_id"] == "conv-9"
        responder.respond.assert_awaited_once_with(inbound)
        assert recording_queue.kinds == ["READ", "TYPING_ON", "TYPING_OFF", "FINAL"]
        final = recording_queue.sent[-1]["body"]
        assert final["replyText"] == "Sure, I can help with that."
        assert final["contact_pk"] == "contact#lead@example.com"
        assert final["persona"] == "Steady"

        traces = bus.of_type(DetailType.TRACE)
        assert len(traces) == 1
        metadata = traces[0]["detail"]["metadata"]
        assert metadata["timing"]["total_ms"] == result["timing"].total_ms
        assert metadata["replyLength"] == len("Sure, I can help with that.")

    @pytest.mark.asyncio
    async def test_persona_from_message(self, service, recording_queue, inbound):
        await service.process_message_with_delayed_response(
            inbound.model_copy(update={"persona_name": "Alex"}))
        assert recording_queue.sent[0]["body"]["persona"] == "Alex"

    @pytest.mark.asyncio
    async def test_sms_single_stage(self, service, recording_queue, inbound):
        await service.process_message_with_delayed_response(
            inbound.model_copy(update={"source": Channel.SMS}))
        assert recording_queue.kinds == ["FINAL"]

    @pytest.mark.asyncio
    async def test_responder_failure_emits_error(self, service, responder, recording_queue, bus, inbound):
        responder.respond.side_effect = ResponderError("responder down")

        with pytest.raises(ResponderError):
            await service.process_message_with_delayed_response(inbound)

        assert recording_queue.sent == []
        errors = bus.of_type(DetailType.ERROR)
        assert len(errors) == 1
        assert errors[0]["detail"]["error"] == "responder down"
        assert errors[0]["detail"]["context"]["operation"] == "delayed_response_processing"

    @pytest.mark.asyncio
    async def test_schedule_failure_propagates(self, responder, personas, bus, clock, inbound):
        scheduler = ActionScheduler(RecordingQueue(fail_on_send=2), personas, clock=clock)
        service = DelayedResponseService(responder, scheduler, bus, default_persona="Steady", clock=clock)

        with pytest.raises(ScheduleError):
            await service.process_message_with_delayed_response(inbound)
        assert len(bus.of_type(DetailType.ERROR)) == 1

    @pytest.mark.asyncio
    async def test_telemetry_failure_does_not_fail_reply(self, responder, scheduler, recording_queue, clock, inbound):
        from conftest import FailingEventBus
        service = DelayedResponseService(responder, scheduler, FailingEventBus(),
                                         default_persona="Steady", clock=clock)
        result = await service.process_message_with_delayed_response(inbound)
        assert result["success"] is True
        assert len(recording_queue.sent) == 4


class TestImmediateResponse:

    @pytest.mark.asyncio
    async def test_publishes_reply_at_once(self, service, recording_queue, bus, inbound):
        result = await service.process_message_immediate(inbound, reason="human_takeover")

        assert result["text"] == "Sure, I can help with that."
        assert recording_queue.sent == []
        replies = bus.of_type(DetailType.REPLY_CREATED)
        assert len(replies) == 1
        detail = replies[0]["detail"]
        assert detail["preferredChannel"] == "chat"
        assert detail["conversation_id"] == "conv-9"
        assert detail["metadata"] == {"bypass_reason": "human_takeover"}
