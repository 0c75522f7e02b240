"""
Action Scheduler — Stages a reply as time-delayed release actions.

For one reply:
  1. Resolve the persona (unknown name fails before anything is enqueued)
  2. Compute Timing from a seed key of tenant:thread:message
  3. Build the stage list for the channel
       chat              READ → TYPING_ON → TYPING_OFF → FINAL
       sms / email / api FINAL
  4. Enqueue every stage with
       delay   = due time - now, clamped to [0, queue maximum]
       group   = tenantId#threadKey       (per-thread ordering)
       dedup   = releaseEventId:kind      (safe caller retries)

If an enqueue fails, stages already enqueued for the reply are deleted
again (rollback_on_failure=True) so a reply is either fully staged or not
at all; with rollback disabled they stay queued and the error reports them.
"""
from __future__ import annotations

import uuid
import structlog
from typing import Callable, Optional

from config.settings import TimingConfig
from job_queue.release_queue import ReleaseQueue
from models.schemas import (
    ActionKind, CHANNEL_STAGES, Channel, ScheduleRequest, StagedAction, Timing,
)
from personas.registry import PersonaStore
from timing.model import compute_timing
from utils.clock import Clock, epoch_ms

logger = structlog.get_logger()

TYPING_ON_AFTER_READ_MS = 300
TYPING_OFF_BEFORE_FINAL_MS = 250
MAX_QUEUE_DELAY_MS = 900_000       # 15 minutes


class ScheduleError(Exception):
    """Raised when a stage of a reply could not be enqueued."""

    def __init__(
        self,
        message: str,
        failed_kind: Optional[ActionKind] = None,
        enqueued: Optional[list[ActionKind]] = None,
        rolled_back: bool = False,
    ):
        self.failed_kind = failed_kind
        self.enqueued = enqueued or []
        self.rolled_back = rolled_back
        super().__init__(message)


def stage_offsets(channel: Channel, timing: Timing) -> list[tuple[ActionKind, int]]:
    """Due offsets (ms after now) of each stage, in delivery order."""
    total = timing.total_ms
    offsets = {ActionKind.FINAL: total}
    if ActionKind.READ in CHANNEL_STAGES[channel]:
        # keep READ ≤ TYPING_ON ≤ TYPING_OFF when the total cap hides read time
        read = min(timing.read_ms, total - TYPING_ON_AFTER_READ_MS - TYPING_OFF_BEFORE_FINAL_MS)
        read = max(0, read)
        offsets[ActionKind.READ] = read
        offsets[ActionKind.TYPING_ON] = read + TYPING_ON_AFTER_READ_MS
        offsets[ActionKind.TYPING_OFF] = max(read + TYPING_ON_AFTER_READ_MS,
                                             total - TYPING_OFF_BEFORE_FINAL_MS)
    return [(kind, offsets[kind]) for kind in CHANNEL_STAGES[channel]]


class ActionScheduler:
    """
    Computes a reply's Timing and enqueues its staged actions.

    Usage:
        scheduler = ActionScheduler(queue, personas)
        timing = await scheduler.schedule_actions(request)
    """

    def __init__(
        self,
        queue: ReleaseQueue,
        personas: PersonaStore,
        timing_config: TimingConfig = None,
        max_delay_ms: int = MAX_QUEUE_DELAY_MS,
        rollback_on_failure: bool = True,
        clock: Clock = epoch_ms,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.queue = queue
        self.personas = personas
        self.timing_config = timing_config or TimingConfig()
        self.max_delay_ms = max_delay_ms
        self.rollback_on_failure = rollback_on_failure
        self._clock = clock
        self._new_id = id_factory

    def compute(self, request: ScheduleRequest) -> Timing:
        persona = self.personas.get(request.persona_name)
        cfg = self.timing_config
        return compute_timing(
            request.seed_key,
            persona,
            request.input_chars,
            request.input_tokens,
            len(request.reply_text),
            min_read_ms=cfg.min_read_ms,
            max_total_ms=cfg.max_total_ms,
            seeded_pauses=cfg.seeded_pauses,
        )

    def build_actions(self, request: ScheduleRequest, timing: Timing, now: int) -> list[StagedAction]:
        actions = []
        for kind, offset in stage_offsets(request.channel, timing):
            actions.append(StagedAction(
                release_event_id=self._new_id(),
                tenant_id=request.tenant_id,
                contact_pk=request.contact_pk,
                conversation_id=request.conversation_id,
                thread_key=request.thread_key,
                channel=request.channel,
                kind=kind,
                persona=request.persona_name,
                reply_text=request.reply_text if kind == ActionKind.FINAL else None,
                message_id=request.message_id,
                due_at_ms=now + offset,
            ))
        return actions

    def delay_for(self, action: StagedAction) -> int:
        return max(0, min(self.max_delay_ms, action.due_at_ms - self._clock()))

    async def schedule_actions(self, request: ScheduleRequest) -> Timing:
        """Enqueue the reply's stages; returns the Timing for telemetry."""
        timing = self.compute(request)
        actions = self.build_actions(request, timing, self._clock())

        sent: list[tuple[StagedAction, str]] = []
        for action in actions:
            try:
                message_id = await self.queue.send(
                    action.to_json(),
                    group_id=action.group_id,
                    dedup_id=action.dedup_id,
                    delay_ms=self.delay_for(action),
                )
            except Exception as e:
                logger.error("stage_enqueue_failed",
                             tenant_id=request.tenant_id,
                             thread_key=request.thread_key,
                             kind=action.kind.value,
                             enqueued=len(sent),
                             error=str(e))
                rolled_back = False
                if self.rollback_on_failure and sent:
                    rolled_back = await self._rollback(sent)
                raise ScheduleError(
                    f"Failed to enqueue {action.kind.value} stage: {e}",
                    failed_kind=action.kind,
                    enqueued=[a.kind for a, _ in sent],
                    rolled_back=rolled_back,
                ) from e
            sent.append((action, message_id))
            logger.debug("stage_enqueued",
                         kind=action.kind.value,
                         release_event_id=action.release_event_id,
                         group_id=action.group_id,
                         due_at_ms=action.due_at_ms)

        logger.info("reply_scheduled",
                    tenant_id=request.tenant_id,
                    thread_key=request.thread_key,
                    channel=request.channel.value,
                    persona=request.persona_name,
                    stages=len(sent),
                    total_ms=timing.total_ms)
        return timing

    async def _rollback(self, sent: list[tuple[StagedAction, str]]) -> bool:
        """Delete already-enqueued stages. True when every one was removed."""
        complete = True
        for action, message_id in reversed(sent):
            try:
                removed = await self.queue.delete(message_id)
            except Exception as e:
                logger.error("stage_rollback_failed",
                             kind=action.kind.value,
                             message_id=message_id,
                             error=str(e))
                complete = False
                continue
            if not removed:
                complete = False
        logger.warning("reply_schedule_rolled_back", stages=len(sent), complete=complete)
        return complete
