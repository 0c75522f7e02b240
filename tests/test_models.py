"""
Tests — Pydantic models: staged action wire format, batch responses, requests.
"""
import json

import pytest
from pydantic import ValidationError

from conftest import make_action
from models.schemas import (
    ActionKind, BatchItemFailure, BatchResponse, CHANNEL_STAGES, Channel, InboundMessage,
    OutcomeStatus, RecordOutcome, ScheduleRequest, StagedAction,
)


class TestStagedAction:

    def test_wire_names(self):
        body = json.loads(make_action(ActionKind.FINAL).to_json())
        assert set(body) == {
            "releaseEventId", "tenantId", "contact_pk", "conversation_id", "threadKey",
            "channel", "kind", "persona", "replyText", "message_id", "dueAtMs",
        }

    def test_none_fields_omitted(self):
        body = json.loads(make_action(ActionKind.READ, persona=None).to_json())
        assert "replyText" not in body
        assert "persona" not in body
        assert "deferrals" not in body

    def test_parse_wire_body(self):
        original = make_action(ActionKind.TYPING_ON)
        parsed = StagedAction.from_json(original.to_json())
        assert parsed == original

    def test_keys(self):
        action = make_action(ActionKind.TYPING_OFF)
        assert action.group_id == "t1#conv1"
        assert action.dedup_id == "rel-1:TYPING_OFF"

    def test_deferred_dedup_key(self):
        action = make_action(ActionKind.FINAL, deferrals=2)
        assert action.dedup_id == "rel-1:FINAL:defer2"

    def test_unknown_kind_rejected(self):
        body = json.loads(make_action().to_json())
        body["kind"] = "WAVE"
        with pytest.raises(ValidationError):
            StagedAction.model_validate(body)


class TestBatchResponse:

    def test_wire_excludes_outcomes(self):
        response = BatchResponse(
            batch_item_failures=[BatchItemFailure(item_identifier="r2")],
            outcomes=[
                RecordOutcome(record_id="r1", status=OutcomeStatus.OK),
                RecordOutcome(record_id="r2", status=OutcomeStatus.FAILED),
            ],
        )
        assert response.to_wire() == {"batchItemFailures": [{"itemIdentifier": "r2"}]}
        assert response.failed_ids == ["r2"]

    def test_empty(self):
        assert BatchResponse().to_wire() == {"batchItemFailures": []}


class TestRequests:

    def test_schedule_request_keys(self):
        request = ScheduleRequest(
            tenant_id="t1", contact_pk="contact#x", conversation_id=None,
            channel=Channel.SMS, persona_name="Carlos", message_id="m1",
            reply_text="hi", input_chars=2, input_tokens=1,
        )
        assert request.thread_key == "contact#x"
        assert request.seed_key == "t1:contact#x:m1"

    @pytest.mark.parametrize("email,phone,expected", [
        ("a@b.com", None, "contact#a@b.com"),
        (None, "+15550100", "contact#+15550100"),
        ("a@b.com", "+15550100", "contact#a@b.com"),
        (None, None, "contact#unknown"),
    ])
    def test_inbound_contact_pk(self, email, phone, expected):
        message = InboundMessage(tenant_id="t1", text="hi", source=Channel.CHAT,
                                 email_lc=email, phone_e164=phone)
        assert message.contact_pk == expected


def test_channel_stage_sets():
    assert CHANNEL_STAGES[Channel.CHAT] == (
        ActionKind.READ, ActionKind.TYPING_ON, ActionKind.TYPING_OFF, ActionKind.FINAL,
    )
    for channel in (Channel.SMS, Channel.EMAIL, Channel.API):
        assert CHANNEL_STAGES[channel] == (ActionKind.FINAL,)
