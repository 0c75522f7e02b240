"""
Core data models for the paced-replies system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class Channel(str, Enum):
    CHAT = "chat"
    SMS = "sms"
    EMAIL = "email"
    API = "api"


class ActionKind(str, Enum):
    READ = "READ"
    TYPING_ON = "TYPING_ON"
    TYPING_OFF = "TYPING_OFF"
    FINAL = "FINAL"


class DetailType:
    MESSAGE_READ = "agent.message.read"
    TYPING_STARTED = "agent.typing.started"
    TYPING_STOPPED = "agent.typing.stopped"
    REPLY_CREATED = "agent.reply.created"
    TRACE = "agent.trace"
    ERROR = "agent.error"


CHANNEL_STAGES: dict[Channel, tuple[ActionKind, ...]] = {
    Channel.CHAT: (ActionKind.READ, ActionKind.TYPING_ON, ActionKind.TYPING_OFF, ActionKind.FINAL),
    Channel.SMS: (ActionKind.FINAL,),
    Channel.EMAIL: (ActionKind.FINAL,),
    Channel.API: (ActionKind.FINAL,),
}


# ──────────────────────────────────────────────────────────────
#  Persona — timing profile of a "typing style"
# ──────────────────────────────────────────────────────────────

Range = tuple[int, int]


def _check_range(name: str, value: Range) -> Range:
    lo, hi = value
    if lo > hi:
        raise ValueError(f"{name}: min {lo} is greater than max {hi}")
    return value


class PausePolicy(BaseModel):
    """Chance of mid-reply hesitation and how long each pause lasts."""
    model_config = ConfigDict(frozen=True)

    prob: float = Field(ge=0.0, le=1.0)
    each_ms: Range
    max: int = Field(ge=1)

    @field_validator("each_ms")
    @classmethod
    def _valid_each_ms(cls, v: Range) -> Range:
        return _check_range("each_ms", v)


class PersonaProfile(BaseModel):
    """
    Inclusive (min, max) sampling bounds for one persona.

    read_cps / type_cps are characters per second; everything else is
    milliseconds (per token or per char where the name says so).
    """
    model_config = ConfigDict(frozen=True)

    name: str = ""
    read_cps: Range
    type_cps: Range
    comp_base_ms: Range
    comp_ms_per_token: Range
    write_ms_per_char: Range
    jitter_ms: Range
    pauses: Optional[PausePolicy] = None

    @model_validator(mode="after")
    def _valid_ranges(self) -> PersonaProfile:
        for name in ("read_cps", "type_cps", "comp_base_ms",
                     "comp_ms_per_token", "write_ms_per_char", "jitter_ms"):
            _check_range(name, getattr(self, name))
        if self.read_cps[0] <= 0 or self.type_cps[0] <= 0:
            raise ValueError("read_cps and type_cps must be positive")
        return self


# ──────────────────────────────────────────────────────────────
#  Timing — result of the timing model
# ──────────────────────────────────────────────────────────────

class Timing(BaseModel):
    model_config = ConfigDict(frozen=True)

    read_ms: int
    comprehension_ms: int
    write_ms: int
    type_ms: int
    jitter_ms: int
    pauses_ms: int = 0
    total_ms: int


# ──────────────────────────────────────────────────────────────
#  StagedAction — one delivery stage waiting on the release queue
# ──────────────────────────────────────────────────────────────

class StagedAction(BaseModel):
    """
    Queue message body. Field aliases are the wire names; None fields are
    left out of the serialized body.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    release_event_id: str = Field(alias="releaseEventId")
    tenant_id: str = Field(alias="tenantId")
    contact_pk: str
    conversation_id: Optional[str] = None
    thread_key: str = Field(alias="threadKey")
    channel: Channel
    kind: ActionKind
    persona: Optional[str] = None
    reply_text: Optional[str] = Field(default=None, alias="replyText")
    message_id: str
    due_at_ms: int = Field(alias="dueAtMs")
    deferrals: Optional[int] = None

    @property
    def group_id(self) -> str:
        return f"{self.tenant_id}#{self.thread_key}"

    @property
    def dedup_id(self) -> str:
        if self.deferrals:
            return f"{self.release_event_id}:{self.kind.value}:defer{self.deferrals}"
        return f"{self.release_event_id}:{self.kind.value}"

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, body: str | bytes) -> StagedAction:
        return cls.model_validate_json(body)


# ──────────────────────────────────────────────────────────────
#  Queue / consumer contracts
# ──────────────────────────────────────────────────────────────

class QueueRecord(BaseModel):
    """A message handed to a consumer by the release queue."""
    message_id: str
    body: str
    group_id: str = ""
    receive_count: int = 1
    receipt: str = ""


class OutcomeStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    FAILED = "failed"


class RecordOutcome(BaseModel):
    """Tagged result of processing one record."""
    record_id: str
    status: OutcomeStatus
    kind: Optional[str] = None
    detail_type: Optional[str] = None
    error: str = ""

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED


class BatchItemFailure(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_identifier: str = Field(alias="itemIdentifier")


class BatchResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_item_failures: list[BatchItemFailure] = Field(default=[], alias="batchItemFailures")
    outcomes: list[RecordOutcome] = Field(default=[], exclude=True)

    @property
    def failed_ids(self) -> list[str]:
        return [f.item_identifier for f in self.batch_item_failures]

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


# ──────────────────────────────────────────────────────────────
#  Requests
# ──────────────────────────────────────────────────────────────

class ScheduleRequest(BaseModel):
    """Everything the scheduler needs to stage one reply."""
    tenant_id: str
    contact_pk: str
    conversation_id: Optional[str] = None
    channel: Channel
    persona_name: str
    message_id: str
    reply_text: str
    input_chars: int
    input_tokens: int

    @property
    def thread_key(self) -> str:
        return self.conversation_id or self.contact_pk

    @property
    def seed_key(self) -> str:
        return f"{self.tenant_id}:{self.thread_key}:{self.message_id}"


class InboundMessage(BaseModel):
    """A lead/contact message waiting for a paced reply."""
    tenant_id: str
    text: str
    source: Channel
    email_lc: Optional[str] = None
    phone_e164: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    persona_name: Optional[str] = None

    @property
    def contact_pk(self) -> str:
        return f"contact#{self.email_lc or self.phone_e164 or 'unknown'}"


class ResponderReply(BaseModel):
    """What the external responder returns for an inbound message."""
    text: str
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    metadata: dict[str, Any] = {}
