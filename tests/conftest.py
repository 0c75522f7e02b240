"""Shared test fixtures for the paced-replies service."""
import itertools
import json
from typing import Optional

import pytest

from core.scheduler import ActionScheduler
from events.bus import EventBus, InMemoryEventBus
from job_queue.release_queue import InMemoryReleaseQueue, QueueError, ReleaseQueue
from models.schemas import (
    ActionKind, Channel, PersonaProfile, QueueRecord, ScheduleRequest, StagedAction,
)
from personas.registry import InMemoryPersonaStore


NOW = 1_700_000_000_000


class ManualClock:
    """Millisecond clock that only moves when a test advances it."""

    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class RecordingQueue(ReleaseQueue):
    """Queue double that records sends and can fail on the n-th one."""

    def __init__(self, fail_on_send: Optional[int] = None):
        self.sent: list[dict] = []
        self.deleted: list[str] = []
        self.fail_on_send = fail_on_send
        self._ids = itertools.count(1)

    async def connect(self):
        pass

    async def close(self):
        pass

    async def send(self, body, *, group_id, dedup_id, delay_ms=0):
        if self.fail_on_send is not None and len(self.sent) + 1 == self.fail_on_send:
            raise QueueError("queue unavailable")
        message_id = f"m{next(self._ids)}"
        self.sent.append({
            "id": message_id,
            "body": json.loads(body),
            "group_id": group_id,
            "dedup_id": dedup_id,
            "delay_ms": delay_ms,
        })
        return message_id

    async def receive(self, max_messages=10):
        return []

    async def settle(self, succeeded, failed, retry_delay_ms=0):
        pass

    async def delete(self, message_id):
        before = len(self.sent)
        self.sent = [m for m in self.sent if m["id"] != message_id]
        self.deleted.append(message_id)
        return len(self.sent) < before

    async def queue_length(self):
        return len(self.sent)

    async def dlq_length(self):
        return 0

    @property
    def kinds(self) -> list[str]:
        return [m["body"]["kind"] for m in self.sent]


class FailingEventBus(EventBus):
    """Bus whose backend always rejects the event."""

    def __init__(self):
        super().__init__("broken")
        self.attempts = 0

    async def _put(self, event):
        self.attempts += 1
        raise RuntimeError("bus down")


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def steady_persona() -> PersonaProfile:
    """
    Zero-width ranges make every sample exact:
    for 50 input chars / 10 tokens / 20 reply chars the timing is
    read 5000, comprehension 1020, write 100, type 4000, jitter 300 → 10420.
    """
    return PersonaProfile(
        name="Steady",
        read_cps=(10, 10),
        type_cps=(5, 5),
        comp_base_ms=(1000, 1000),
        comp_ms_per_token=(2, 2),
        write_ms_per_char=(5, 5),
        jitter_ms=(300, 300),
    )


@pytest.fixture
def personas(steady_persona) -> InMemoryPersonaStore:
    store = InMemoryPersonaStore()
    store.register(steady_persona)
    return store


@pytest.fixture
def memory_queue(clock) -> InMemoryReleaseQueue:
    return InMemoryReleaseQueue(
        dedup_window_ms=300_000,
        visibility_timeout_ms=60_000,
        max_receive_count=3,
        clock=clock,
    )


@pytest.fixture
def recording_queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def id_factory():
    counter = itertools.count(1)
    return lambda: f"rel-{next(counter)}"


@pytest.fixture
def scheduler(recording_queue, personas, clock, id_factory) -> ActionScheduler:
    return ActionScheduler(recording_queue, personas, clock=clock, id_factory=id_factory)


@pytest.fixture
def chat_request() -> ScheduleRequest:
    return ScheduleRequest(
        tenant_id="t1",
        contact_pk="contact#lead@example.com",
        conversation_id="conv1",
        channel=Channel.CHAT,
        persona_name="Steady",
        message_id="m1",
        reply_text="x" * 20,
        input_chars=50,
        input_tokens=10,
    )


def make_action(kind: ActionKind = ActionKind.FINAL, due_at_ms: int = NOW, **overrides) -> StagedAction:
    fields = dict(
        release_event_id="rel-1",
        tenant_id="t1",
        contact_pk="contact#lead@example.com",
        conversation_id="conv1",
        thread_key="conv1",
        channel=Channel.CHAT,
        kind=kind,
        persona="Carlos",
        reply_text="Hey!" if kind == ActionKind.FINAL else None,
        message_id="m1",
        due_at_ms=due_at_ms,
    )
    fields.update(overrides)
    return StagedAction(**fields)


def make_record(body, message_id: str = "r1", group_id: str = "t1#conv1") -> QueueRecord:
    if isinstance(body, StagedAction):
        body = body.to_json()
    elif not isinstance(body, str):
        body = json.dumps(body)
    return QueueRecord(message_id=message_id, body=body, group_id=group_id)
