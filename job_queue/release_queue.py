"""
Release Queue — Ordered, delayed, deduplicated channel for staged actions.

Delivery contract (what the scheduler and consumer rely on):
  - delayed visibility   a message is invisible until its delay elapses
  - deduplication        a repeated dedup_id inside the dedup window is dropped
  - group ordering       messages sharing a group_id are delivered in send order;
                         a group with messages in flight hands out nothing else
  - at-least-once        unsettled or failed messages are redelivered; after
                         max_receive_count receives they move to the DLQ

Backends:
  InMemoryReleaseQueue   asyncio lock + dicts (development, tests)
  RedisReleaseQueue      hash per message, list per group, SET NX PX for
                         dedup keys and group locks (production)
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Optional

from models.schemas import QueueRecord
from utils.clock import Clock, epoch_ms

logger = structlog.get_logger()


class QueueError(Exception):
    """Raised when the queue backend cannot complete an operation."""


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class ReleaseQueue(ABC):
    """Abstract release queue interface."""

    max_receive_count: int = 3

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def send(self, body: str, *, group_id: str, dedup_id: str, delay_ms: int = 0) -> str:
        """
        Enqueue a message. Returns the message id; for a duplicate dedup_id
        inside the window, returns the original id and enqueues nothing.
        """
        ...

    @abstractmethod
    async def receive(self, max_messages: int = 10) -> list[QueueRecord]:
        """Take up to max_messages due messages, respecting group order."""
        ...

    @abstractmethod
    async def settle(
        self,
        succeeded: list[QueueRecord],
        failed: list[QueueRecord],
        retry_delay_ms: int = 0,
    ):
        """Delete succeeded messages and return failed ones for redelivery."""
        ...

    @abstractmethod
    async def delete(self, message_id: str) -> bool:
        """Remove a pending message. Returns False if it was not found."""
        ...

    @abstractmethod
    async def queue_length(self) -> int:
        """Number of messages waiting or in flight."""
        ...

    @abstractmethod
    async def dlq_length(self) -> int:
        """Number of dead-lettered messages."""
        ...


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

@dataclass
class _Message:
    message_id: str
    body: str
    group_id: str
    dedup_id: str
    visible_at: int
    sent_at: int
    receive_count: int = 0
    receipt: str = ""
    in_flight_until: int = 0


class InMemoryReleaseQueue(ReleaseQueue):
    """
    Development/test queue. Single-process only, no persistence.
    Time comes from an injectable clock so tests can move it.
    """

    def __init__(
        self,
        dedup_window_ms: int = 300_000,
        visibility_timeout_ms: int = 60_000,
        max_receive_count: int = 3,
        clock: Clock = epoch_ms,
    ):
        self.dedup_window_ms = dedup_window_ms
        self.visibility_timeout_ms = visibility_timeout_ms
        self.max_receive_count = max_receive_count
        self._clock = clock
        self._groups: OrderedDict[str, list[_Message]] = OrderedDict()
        self._by_id: dict[str, _Message] = {}
        self._dedup: dict[str, tuple[str, int]] = {}   # dedup_id → (message_id, expires_at)
        self._dlq: list[_Message] = []
        self._lock = asyncio.Lock()
        self._running = False

    async def connect(self):
        self._running = True
        logger.info("inmemory_release_queue_connected")

    async def close(self):
        self._running = False

    async def send(self, body: str, *, group_id: str, dedup_id: str, delay_ms: int = 0) -> str:
        async with self._lock:
            now = self._clock()
            self._dedup = {k: v for k, v in self._dedup.items() if v[1] > now}
            if dedup_id in self._dedup:
                existing_id = self._dedup[dedup_id][0]
                logger.info("duplicate_message_suppressed",
                            dedup_id=dedup_id,
                            message_id=existing_id)
                return existing_id

            message = _Message(
                message_id=f"msg_{uuid.uuid4().hex}",
                body=body,
                group_id=group_id,
                dedup_id=dedup_id,
                visible_at=now + max(0, delay_ms),
                sent_at=now,
            )
            self._groups.setdefault(group_id, []).append(message)
            self._by_id[message.message_id] = message
            self._dedup[dedup_id] = (message.message_id, now + self.dedup_window_ms)

        logger.debug("message_sent",
                     message_id=message.message_id,
                     group_id=group_id,
                     delay_ms=delay_ms)
        return message.message_id

    async def receive(self, max_messages: int = 10) -> list[QueueRecord]:
        records: list[QueueRecord] = []
        async with self._lock:
            now = self._clock()
            for group_id, messages in list(self._groups.items()):
                if len(records) >= max_messages:
                    break
                for m in messages:
                    if m.receipt and m.in_flight_until <= now:
                        m.receipt = ""        # visibility timeout expired
                if any(m.receipt for m in messages):
                    continue
                for m in list(messages):
                    if len(records) >= max_messages or m.visible_at > now:
                        break
                    if m.receive_count >= self.max_receive_count:
                        self._dead_letter(m, reason="max_receive_count")
                        continue
                    m.receive_count += 1
                    m.receipt = uuid.uuid4().hex
                    m.in_flight_until = now + self.visibility_timeout_ms
                    records.append(self._to_record(m))
        return records

    async def settle(
        self,
        succeeded: list[QueueRecord],
        failed: list[QueueRecord],
        retry_delay_ms: int = 0,
    ):
        async with self._lock:
            now = self._clock()
            for record in succeeded:
                m = self._claimed(record)
                if m:
                    self._remove(m)
            for record in failed:
                m = self._claimed(record)
                if not m:
                    continue
                if m.receive_count >= self.max_receive_count:
                    self._dead_letter(m, reason="max_receive_count")
                else:
                    m.receipt = ""
                    m.visible_at = now + retry_delay_ms

    async def delete(self, message_id: str) -> bool:
        async with self._lock:
            m = self._by_id.get(message_id)
            if m is None:
                return False
            self._remove(m)
            return True

    async def queue_length(self) -> int:
        return len(self._by_id)

    async def dlq_length(self) -> int:
        return len(self._dlq)

    async def peek(self, count: int = 10) -> list[QueueRecord]:
        """Look at pending messages in group order without receiving them."""
        records = []
        for messages in self._groups.values():
            records.extend(self._to_record(m) for m in messages)
        return records[:count]

    # ── internals ─────────────────────────────────────

    def _to_record(self, m: _Message) -> QueueRecord:
        return QueueRecord(
            message_id=m.message_id,
            body=m.body,
            group_id=m.group_id,
            receive_count=m.receive_count,
            receipt=m.receipt,
        )

    def _claimed(self, record: QueueRecord) -> Optional[_Message]:
        m = self._by_id.get(record.message_id)
        if m is None or m.receipt != record.receipt:
            logger.warning("stale_receipt_ignored", message_id=record.message_id)
            return None
        return m

    def _remove(self, m: _Message):
        self._by_id.pop(m.message_id, None)
        group = self._groups.get(m.group_id, [])
        if m in group:
            group.remove(m)
        if not group:
            self._groups.pop(m.group_id, None)

    def _dead_letter(self, m: _Message, reason: str):
        self._remove(m)
        self._dlq.append(m)
        logger.warning("message_moved_to_dlq",
                       message_id=m.message_id,
                       group_id=m.group_id,
                       receives=m.receive_count,
                       reason=reason)


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

class RedisReleaseQueue(ReleaseQueue):
    """
    Production queue backed by Redis.

    Keys (prefix = release:{queue_name}):
      {p}:msg:{id}        hash — body, group_id, dedup_id, visible_at, receive_count
      {p}:group:{group}   list — message ids in send order
      {p}:groups          set  — groups with pending messages
      {p}:lock:{group}    str  — receipt of the batch holding the group (PX visibility)
      {p}:dedup:{id}      str  — message id (PX dedup window)
      {p}:dlq             list — dead-lettered message hashes as JSON
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        queue_name: str = "reply-release",
        dedup_window_ms: int = 300_000,
        visibility_timeout_ms: int = 60_000,
        max_receive_count: int = 3,
        clock: Clock = epoch_ms,
    ):
        self._redis_url = redis_url
        self._prefix = f"release:{queue_name}"
        self.dedup_window_ms = dedup_window_ms
        self.visibility_timeout_ms = visibility_timeout_ms
        self.max_receive_count = max_receive_count
        self._clock = clock
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_release_queue_connected", url=self._redis_url, prefix=self._prefix)

    async def close(self):
        if self._redis:
            await self._redis.close()
            self._redis = None

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix,) + parts)

    @property
    def redis(self):
        if self._redis is None:
            raise QueueError("Release queue is not connected")
        return self._redis

    async def send(self, body: str, *, group_id: str, dedup_id: str, delay_ms: int = 0) -> str:
        now = self._clock()
        message_id = f"msg_{uuid.uuid4().hex}"
        dedup_key = self._key("dedup", dedup_id)

        claimed = await self.redis.set(dedup_key, message_id, nx=True, px=self.dedup_window_ms)
        if not claimed:
            existing_id = await self.redis.get(dedup_key)
            logger.info("duplicate_message_suppressed",
                        dedup_id=dedup_id,
                        message_id=existing_id)
            return existing_id or message_id

        pipe = self.redis.pipeline()
        pipe.hset(self._key("msg", message_id), mapping={
            "body": body,
            "group_id": group_id,
            "dedup_id": dedup_id,
            "visible_at": str(now + max(0, delay_ms)),
            "sent_at": str(now),
            "receive_count": "0",
        })
        pipe.rpush(self._key("group", group_id), message_id)
        pipe.sadd(self._key("groups"), group_id)
        await pipe.execute()

        logger.debug("message_sent",
                     message_id=message_id,
                     group_id=group_id,
                     delay_ms=delay_ms)
        return message_id

    async def receive(self, max_messages: int = 10) -> list[QueueRecord]:
        records: list[QueueRecord] = []
        now = self._clock()

        for group_id in await self.redis.smembers(self._key("groups")):
            if len(records) >= max_messages:
                break
            group_key = self._key("group", group_id)
            ids = await self.redis.lrange(group_key, 0, max_messages - len(records) - 1)
            if not ids:
                await self.redis.srem(self._key("groups"), group_id)
                continue

            receipt = uuid.uuid4().hex
            locked = await self.redis.set(
                self._key("lock", group_id), receipt,
                nx=True, px=self.visibility_timeout_ms,
            )
            if not locked:
                continue  # another batch holds this group

            taken = 0
            for message_id in ids:
                if len(records) >= max_messages:
                    break
                msg_key = self._key("msg", message_id)
                data = await self.redis.hgetall(msg_key)
                if not data:
                    await self.redis.lrem(group_key, 1, message_id)
                    continue
                if int(data["visible_at"]) > now:
                    break
                if int(data["receive_count"]) >= self.max_receive_count:
                    await self._dead_letter(message_id, data, reason="max_receive_count")
                    continue
                count = await self.redis.hincrby(msg_key, "receive_count", 1)
                records.append(QueueRecord(
                    message_id=message_id,
                    body=data["body"],
                    group_id=group_id,
                    receive_count=count,
                    receipt=receipt,
                ))
                taken += 1

            if taken == 0:
                await self._release_lock(group_id, receipt)

        return records

    async def settle(
        self,
        succeeded: list[QueueRecord],
        failed: list[QueueRecord],
        retry_delay_ms: int = 0,
    ):
        now = self._clock()
        locks: dict[str, str] = {}

        for record in succeeded:
            if not await self._holds_lock(record):
                continue
            await self._remove(record.message_id, record.group_id)
            locks[record.group_id] = record.receipt

        for record in failed:
            if not await self._holds_lock(record):
                continue
            msg_key = self._key("msg", record.message_id)
            data = await self.redis.hgetall(msg_key)
            if data and int(data["receive_count"]) >= self.max_receive_count:
                await self._dead_letter(record.message_id, data, reason="max_receive_count")
            elif data:
                await self.redis.hset(msg_key, "visible_at", str(now + retry_delay_ms))
            locks[record.group_id] = record.receipt

        for group_id, receipt in locks.items():
            await self._release_lock(group_id, receipt)

    async def delete(self, message_id: str) -> bool:
        group_id = await self.redis.hget(self._key("msg", message_id), "group_id")
        if group_id is None:
            return False
        await self._remove(message_id, group_id)
        return True

    async def queue_length(self) -> int:
        total = 0
        for group_id in await self.redis.smembers(self._key("groups")):
            total += await self.redis.llen(self._key("group", group_id))
        return total

    async def dlq_length(self) -> int:
        return await self.redis.llen(self._key("dlq"))

    # ── internals ─────────────────────────────────────

    async def _holds_lock(self, record: QueueRecord) -> bool:
        current = await self.redis.get(self._key("lock", record.group_id))
        if current != record.receipt:
            logger.warning("stale_receipt_ignored", message_id=record.message_id)
            return False
        return True

    async def _release_lock(self, group_id: str, receipt: str):
        lock_key = self._key("lock", group_id)
        if await self.redis.get(lock_key) == receipt:
            await self.redis.delete(lock_key)

    async def _remove(self, message_id: str, group_id: str):
        pipe = self.redis.pipeline()
        pipe.lrem(self._key("group", group_id), 1, message_id)
        pipe.delete(self._key("msg", message_id))
        await pipe.execute()

    async def _dead_letter(self, message_id: str, data: dict[str, Any], reason: str):
        entry = json.dumps({**data, "message_id": message_id, "dlq_reason": reason})
        await self.redis.rpush(self._key("dlq"), entry)
        await self._remove(message_id, data.get("group_id", ""))
        logger.warning("message_moved_to_dlq",
                       message_id=message_id,
                       group_id=data.get("group_id"),
                       receives=data.get("receive_count"),
                       reason=reason)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_release_queue(queue_config: dict[str, Any] = None, clock: Clock = epoch_ms) -> ReleaseQueue:
    """Factory: create the configured queue backend."""
    config = queue_config or {}
    backend = config.get("backend", "memory")
    common = {
        "dedup_window_ms": int(config.get("dedup_window_seconds", 300)) * 1000,
        "visibility_timeout_ms": int(config.get("visibility_timeout_seconds", 60)) * 1000,
        "max_receive_count": int(config.get("max_receive_count", 3)),
        "clock": clock,
    }

    if backend == "redis":
        queue = RedisReleaseQueue(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            queue_name=config.get("queue_name", "reply-release"),
            **common,
        )
    else:
        queue = InMemoryReleaseQueue(**common)

    logger.info("release_queue_created", backend=type(queue).__name__)
    return queue
