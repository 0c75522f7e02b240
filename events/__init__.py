"""Outbound lifecycle event bus."""
from events.bus import (
    EventBus,
    EventPublishError,
    HttpEventBus,
    InMemoryEventBus,
    RedisEventBus,
    create_event_bus,
)

__all__ = [
    "EventBus", "EventPublishError", "HttpEventBus",
    "InMemoryEventBus", "RedisEventBus", "create_event_bus",
]
