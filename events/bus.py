"""
Event Bus — Outbound sink for agent lifecycle events.

Every event is an envelope:
  {
      "id":          unique event id,
      "bus":         bus name,
      "source":      producer name (e.g. "kxgen.agent"),
      "detail_type": "agent.message.read" | "agent.typing.started" | ...,
      "detail":      event payload,
      "time":        ISO timestamp of publication,
  }

Backends:
  InMemoryEventBus   keeps published events and calls local subscribers
  RedisEventBus      XADD onto the stream events:{bus}
  HttpEventBus       POSTs the envelope to a webhook (retried with backoff)
"""
from __future__ import annotations

import abc
import json
import uuid
import structlog
from collections import defaultdict
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import EventBusConfig
from utils.clock import iso_now

logger = structlog.get_logger()

EventHandler = Callable[[dict[str, Any]], Awaitable[None]]


class EventPublishError(Exception):
    """Raised when an event could not be handed to the bus."""

    def __init__(self, message: str, detail_type: str = "", retryable: bool = True):
        self.detail_type = detail_type
        self.retryable = retryable
        super().__init__(message)


class EventBus(abc.ABC):
    """Abstract outbound event bus."""

    def __init__(self, bus_name: str = "default", source: str = "kxgen.agent"):
        self.bus_name = bus_name
        self.source = source

    async def connect(self):
        """Open connections, if the backend needs any."""

    async def close(self):
        """Release connections."""

    def envelope(self, detail_type: str, detail: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": str(uuid.uuid4()),
            "bus": self.bus_name,
            "source": self.source,
            "detail_type": detail_type,
            "detail": detail,
            "time": iso_now(),
        }

    async def publish(self, detail_type: str, detail: dict[str, Any]) -> str:
        """Publish one event. Returns its id; raises EventPublishError."""
        event = self.envelope(detail_type, detail)
        try:
            await self._put(event)
        except EventPublishError:
            raise
        except Exception as e:
            logger.error("event_publish_failed",
                         bus=self.bus_name,
                         detail_type=detail_type,
                         error=str(e))
            raise EventPublishError(str(e), detail_type=detail_type) from e
        logger.debug("event_published",
                     bus=self.bus_name,
                     detail_type=detail_type,
                     event_id=event["id"])
        return event["id"]

    @abc.abstractmethod
    async def _put(self, event: dict[str, Any]):
        ...


# ──────────────────────────────────────────────────────────────
#  In-Memory (development / tests)
# ──────────────────────────────────────────────────────────────

class InMemoryEventBus(EventBus):
    """Keeps every published event; subscribers run inline on publish."""

    def __init__(self, bus_name: str = "default", source: str = "kxgen.agent"):
        super().__init__(bus_name, source)
        self.events: list[dict[str, Any]] = []
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def on(self, detail_type: str, handler: EventHandler):
        """Register a handler for a detail type ("*" for all)."""
        self._handlers[detail_type].append(handler)

    async def _put(self, event: dict[str, Any]):
        self.events.append(event)
        for handler in self._handlers[event["detail_type"]] + self._handlers["*"]:
            try:
                await handler(event)
            except Exception as e:
                logger.error("event_handler_error",
                             detail_type=event["detail_type"],
                             handler=getattr(handler, "__qualname__", repr(handler)),
                             error=str(e))

    def of_type(self, detail_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["detail_type"] == detail_type]


# ──────────────────────────────────────────────────────────────
#  Redis Streams
# ──────────────────────────────────────────────────────────────

class RedisEventBus(EventBus):
    """Appends events to a Redis Stream that downstream adapters consume."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        bus_name: str = "default",
        source: str = "kxgen.agent",
        max_len: int = 100_000,
    ):
        super().__init__(bus_name, source)
        self._redis_url = redis_url
        self._stream = f"events:{bus_name}"
        self._max_len = max_len
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        await self._redis.ping()
        logger.info("redis_event_bus_connected", stream=self._stream)

    async def close(self):
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def _put(self, event: dict[str, Any]):
        if self._redis is None:
            raise EventPublishError("Event bus is not connected",
                                    detail_type=event["detail_type"], retryable=False)
        fields = {**event, "detail": json.dumps(event["detail"])}
        await self._redis.xadd(self._stream, fields, maxlen=self._max_len, approximate=True)


# ──────────────────────────────────────────────────────────────
#  HTTP webhook
# ──────────────────────────────────────────────────────────────

class HttpEventBus(EventBus):
    """Delivers each envelope to an HTTP endpoint as JSON."""

    def __init__(self, config: EventBusConfig):
        super().__init__(config.bus_name, config.source)
        self.config = config
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.config.auth_token:
                headers["Authorization"] = f"Bearer {self.config.auth_token}"
            self.client = httpx.AsyncClient(headers=headers, timeout=self.config.timeout_seconds)
        return self.client

    async def close(self):
        if self.client and not self.client.is_closed:
            await self.client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, event: dict[str, Any]):
        client = await self._get_client()
        response = await client.post(self.config.endpoint_url, json=event)
        response.raise_for_status()

    async def _put(self, event: dict[str, Any]):
        await self._post(event)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_event_bus(config: EventBusConfig = None) -> EventBus:
    """Factory: create the configured event bus backend."""
    config = config or EventBusConfig()

    if config.backend == "redis":
        bus = RedisEventBus(config.redis_url, config.bus_name, config.source)
    elif config.backend == "http" and config.endpoint_url:
        bus = HttpEventBus(config)
    else:
        if config.backend not in ("memory", ""):
            logger.warning("using_memory_event_bus", requested=config.backend)
        bus = InMemoryEventBus(config.bus_name, config.source)

    logger.info("event_bus_created", backend=type(bus).__name__, bus=config.bus_name)
    return bus
