"""
Release Consumer — Turns due staged actions into outbound lifecycle events.

Topology:
  ┌───────────────┐       ┌──────────────────┐       ┌─────────────┐
  │ ActionScheduler│──send─▶│ release queue     │──────▶│ ReleaseWorker│
  └───────────────┘       │ (delayed, grouped)│ batch │  (poller)    │
                          └─────────▲────────┘       └──────┬──────┘
                                    │ settle                 │ handle_batch
                                    │ (ack ok / redeliver    ▼
                                    │  failed, DLQ after  ┌──────────────┐
                                    └──── max receives) ──│ReleaseConsumer│──publish──▶ event bus
                                                          └──────────────┘

Each record yields a RecordOutcome (ok | skipped | deferred | failed); the
batch response lists only failed record ids, so one bad record never fails
its siblings.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from typing import Any, Optional

from pydantic import ValidationError

from events.bus import EventBus
from job_queue.release_queue import ReleaseQueue
from models.schemas import (
    ActionKind, BatchItemFailure, BatchResponse, DetailType, OutcomeStatus,
    QueueRecord, RecordOutcome, StagedAction,
)
from utils.clock import Clock, epoch_ms, iso_now

logger = structlog.get_logger()

KNOWN_KINDS = {k.value for k in ActionKind}


def _compact(payload: dict[str, Any]) -> dict[str, Any]:
    """Drop optional fields that are unset."""
    return {k: v for k, v in payload.items() if v is not None}


def build_event(action: StagedAction, at: Optional[str] = None) -> tuple[str, dict[str, Any]]:
    """Map a staged action to (detail_type, payload)."""
    at = at or iso_now()

    if action.kind == ActionKind.READ:
        return DetailType.MESSAGE_READ, _compact({
            "tenantId": action.tenant_id,
            "contact_pk": action.contact_pk,
            "channel": action.channel.value,
            "conversation_id": action.conversation_id,
            "message_id": action.message_id,
            "timestamps": {"at": at},
        })

    if action.kind in (ActionKind.TYPING_ON, ActionKind.TYPING_OFF):
        detail_type = (DetailType.TYPING_STARTED if action.kind == ActionKind.TYPING_ON
                       else DetailType.TYPING_STOPPED)
        return detail_type, _compact({
            "tenantId": action.tenant_id,
            "contact_pk": action.contact_pk,
            "channel": action.channel.value,
            "conversation_id": action.conversation_id,
            "message_id": action.message_id,
            "persona": action.persona,
            "timestamps": {"at": at},
        })

    # FINAL: routing and metadata are filled in by downstream delivery adapters
    return DetailType.REPLY_CREATED, _compact({
        "tenantId": action.tenant_id,
        "contact_pk": action.contact_pk,
        "preferredChannel": action.channel.value,
        "text": action.reply_text or "",
        "routing": {},
        "conversation_id": action.conversation_id,
        "metadata": {},
        "timing": {},
    })


def records_from_sqs_event(event: dict[str, Any]) -> list[QueueRecord]:
    """Adapt an SQS batch event ({"Records": [...]}) to queue records."""
    records = []
    for raw in event.get("Records", []):
        attributes = raw.get("attributes", {})
        records.append(QueueRecord(
            message_id=raw["messageId"],
            body=raw.get("body", ""),
            group_id=attributes.get("MessageGroupId", ""),
            receive_count=int(attributes.get("ApproximateReceiveCount", 1)),
            receipt=raw.get("receiptHandle", ""),
        ))
    return records


class ReleaseConsumer:
    """
    Stateless batch handler for due staged actions.

    When a queue is attached, actions released before their due time (their
    delay was clamped to the queue maximum) are re-enqueued for the
    remaining wait instead of being published early.
    """

    def __init__(
        self,
        bus: EventBus,
        queue: Optional[ReleaseQueue] = None,
        defer_tolerance_ms: int = 1000,
        max_delay_ms: int = 900_000,
        clock: Clock = epoch_ms,
    ):
        self.bus = bus
        self.queue = queue
        self.defer_tolerance_ms = defer_tolerance_ms
        self.max_delay_ms = max_delay_ms
        self._clock = clock

    async def handle_batch(self, records: list[QueueRecord]) -> BatchResponse:
        """Process every record on its own; report failures per item."""
        outcomes = [await self.process_record(record) for record in records]

        failures = [BatchItemFailure(item_identifier=o.record_id) for o in outcomes if o.failed]
        if failures:
            logger.warning("release_batch_partial_failure",
                           records=len(records),
                           failures=len(failures))
        return BatchResponse(batch_item_failures=failures, outcomes=outcomes)

    async def process_record(self, record: QueueRecord) -> RecordOutcome:
        """Parse, dispatch and publish one record. Never raises for record errors."""
        try:
            data = json.loads(record.body)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error("release_record_parse_failed",
                         record_id=record.message_id,
                         error=str(e))
            return RecordOutcome(record_id=record.message_id, status=OutcomeStatus.FAILED,
                                 error=f"invalid json: {e}")
        if not isinstance(data, dict):
            logger.error("release_record_parse_failed",
                         record_id=record.message_id,
                         error="body is not an object")
            return RecordOutcome(record_id=record.message_id, status=OutcomeStatus.FAILED,
                                 error="body is not an object")

        kind = data.get("kind")
        if not isinstance(kind, str) or kind not in KNOWN_KINDS:
            logger.warning("unknown_action_kind_skipped",
                           record_id=record.message_id,
                           kind=kind)
            return RecordOutcome(record_id=record.message_id, status=OutcomeStatus.SKIPPED,
                                 kind=str(kind))

        try:
            action = StagedAction.model_validate(data)
        except ValidationError as e:
            logger.error("release_record_invalid",
                         record_id=record.message_id,
                         kind=kind,
                         error=str(e))
            return RecordOutcome(record_id=record.message_id, status=OutcomeStatus.FAILED,
                                 kind=kind, error=f"invalid action: {e}")

        if self.queue is not None and action.due_at_ms - self._clock() > self.defer_tolerance_ms:
            return await self._defer(record, action)

        detail_type, payload = build_event(action)
        try:
            await self.bus.publish(detail_type, payload)
        except Exception as e:
            logger.error("release_publish_failed",
                         record_id=record.message_id,
                         kind=kind,
                         detail_type=detail_type,
                         error=str(e))
            return RecordOutcome(record_id=record.message_id, status=OutcomeStatus.FAILED,
                                 kind=kind, detail_type=detail_type, error=str(e))

        logger.info("release_action_published",
                    record_id=record.message_id,
                    kind=kind,
                    detail_type=detail_type,
                    tenant_id=action.tenant_id,
                    thread_key=action.thread_key)
        return RecordOutcome(record_id=record.message_id, status=OutcomeStatus.OK,
                             kind=kind, detail_type=detail_type)

    async def _defer(self, record: QueueRecord, action: StagedAction) -> RecordOutcome:
        """Re-enqueue an early action for the rest of its wait."""
        remaining = action.due_at_ms - self._clock()
        deferred = action.model_copy(update={"deferrals": (action.deferrals or 0) + 1})
        try:
            await self.queue.send(
                deferred.to_json(),
                group_id=deferred.group_id,
                dedup_id=deferred.dedup_id,
                delay_ms=max(0, min(self.max_delay_ms, remaining)),
            )
        except Exception as e:
            logger.error("release_defer_failed",
                         record_id=record.message_id,
                         kind=action.kind.value,
                         error=str(e))
            return RecordOutcome(record_id=record.message_id, status=OutcomeStatus.FAILED,
                                 kind=action.kind.value, error=str(e))

        logger.info("release_action_deferred",
                    record_id=record.message_id,
                    kind=action.kind.value,
                    remaining_ms=remaining,
                    deferrals=deferred.deferrals)
        return RecordOutcome(record_id=record.message_id, status=OutcomeStatus.DEFERRED,
                             kind=action.kind.value)


# ──────────────────────────────────────────────────────────────
#  Worker — polls the queue and settles batches
# ──────────────────────────────────────────────────────────────

class ReleaseWorker:
    """
    Pulls due batches from the release queue and runs the consumer.

    Usage:
        worker = ReleaseWorker(queue, consumer)
        await worker.start()              # blocks, runs until stop()
        await worker.start_background()   # returns immediately, runs as tasks
        await worker.stop()
    """

    def __init__(
        self,
        queue: ReleaseQueue,
        consumer: ReleaseConsumer,
        batch_size: int = 5,
        poll_interval_seconds: float = 1.0,
        concurrency: int = 1,
        retry_delay_ms: int = 0,
    ):
        self.queue = queue
        self.consumer = consumer
        self.batch_size = batch_size
        self.poll_interval = poll_interval_seconds
        self.concurrency = concurrency
        self.retry_delay_ms = retry_delay_ms
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self.batches_processed = 0

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> Optional[BatchResponse]:
        """Receive one batch, process it and settle it. None when nothing was due."""
        records = await self.queue.receive(self.batch_size)
        if not records:
            return None

        response = await self.consumer.handle_batch(records)
        failed_ids = set(response.failed_ids)
        await self.queue.settle(
            [r for r in records if r.message_id not in failed_ids],
            [r for r in records if r.message_id in failed_ids],
            retry_delay_ms=self.retry_delay_ms,
        )
        self.batches_processed += 1
        logger.debug("release_batch_settled",
                     records=len(records),
                     failed=len(failed_ids))
        return response

    async def _poll(self, worker_index: int):
        while self._running:
            try:
                response = await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("release_worker_error", worker=worker_index, error=str(e))
                response = None
            if response is None:
                await asyncio.sleep(self.poll_interval)

    async def start(self):
        """Start polling — blocks until stop() is called."""
        self._running = True
        logger.info("release_worker_starting",
                    batch_size=self.batch_size,
                    concurrency=self.concurrency)
        await asyncio.gather(*(self._poll(i) for i in range(self.concurrency)))

    async def start_background(self) -> asyncio.Task:
        """Start polling in a background task. Returns the task handle."""
        self._running = True
        task = asyncio.create_task(self.start())
        self._tasks.append(task)
        return task

    async def stop(self):
        """Gracefully stop all polling tasks."""
        self._running = False
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("release_worker_stopped")
