"""Event system for actor observability.

This package provides the event infrastructure that lets subscribers follow
what an actor is doing: messages being batched, timers firing, plans being
executed and replies being delivered. It is based on an async pub/sub pattern
using asyncio.Queue.

Key Components:
    - EventType: Enum of all event types in the system
    - ActorEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation for event distribution
    - LLMMetrics: Token and latency metrics for individual LLM calls

Usage:
    >>> from events import ActorEvent, EventType, get_event_bus
    >>>
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("chat_42")
    >>> await bus.publish(ActorEvent(
    ...     type=EventType.BATCH_QUEUED,
    ...     actor_id="chat_42",
    ...     data={"request_id": "req_1", "pending_count": 1},
    ... ))
    >>> event = await queue.get()
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    ActorEvent,
    EventType,
    LLMMetrics,
)

__all__ = [
    # Event types
    "EventType",
    "ActorEvent",
    "LLMMetrics",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
