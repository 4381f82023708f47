"""Async event bus for actor pub/sub communication.

This module provides an EventBus class that fans out actor events to any
number of asyncio.Queue subscribers (WebSocket streams, tests, diagnostics).

The event bus supports:
- Multiple subscribers per actor
- Buffering of events published before the first subscriber connects
- Bounded per-actor history for replay on reconnect
- Closing an actor stream with a sentinel event
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import ActorEvent, EventType

logger = structlog.get_logger(__name__)


class EventBus:
    """Async pub/sub event bus keyed by actor id.

    Publishing never blocks the batch state machine for long: a stalled
    subscriber queue is given a short timeout and then skipped.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("chat_42")
        >>> await bus.publish(ActorEvent(type=EventType.BATCH_QUEUED, actor_id="chat_42"))
        >>> event = await queue.get()
        >>> bus.unsubscribe("chat_42", queue)

    Attributes:
        _subscribers: Dict mapping actor_id to list of subscriber queues
        _event_buffer: Dict mapping actor_id to events awaiting a first subscriber
        _event_history: Dict mapping actor_id to recent events
        _lock: Threading lock guarding the registries
    """

    # Maximum number of events to retain per actor for replay on reconnect.
    MAX_HISTORY_PER_ACTOR = 1000

    # Maximum number of events buffered for an actor nobody listens to.
    MAX_BUFFER_PER_ACTOR = 200

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[ActorEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[ActorEvent]] = defaultdict(list)
        self._event_history: dict[str, list[ActorEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def subscribe(self, actor_id: str) -> asyncio.Queue[ActorEvent]:
        """Subscribe to events for an actor.

        Buffered events (published before anyone subscribed) are delivered to
        the new queue immediately and then dropped from the buffer.

        Args:
            actor_id: The actor to subscribe to

        Returns:
            An asyncio.Queue that will receive ActorEvent objects
        """
        queue: asyncio.Queue[ActorEvent] = asyncio.Queue()

        with self._lock:
            self._subscribers[actor_id].append(queue)
            subscriber_count = len(self._subscribers[actor_id])
            buffered_events = self._event_buffer.pop(actor_id, [])

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            actor_id=actor_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, actor_id: str, queue: asyncio.Queue[ActorEvent]) -> None:
        """Unsubscribe a queue from actor events.

        Unknown actors or queues are a no-op.

        Args:
            actor_id: The actor to unsubscribe from
            queue: The queue to remove
        """
        with self._lock:
            queues = self._subscribers.get(actor_id)
            if not queues:
                return
            try:
                queues.remove(queue)
            except ValueError:
                logger.warning("unsubscribe_queue_not_found", actor_id=actor_id)
                return
            if not queues:
                del self._subscribers[actor_id]
            remaining = len(queues)

        logger.info(
            "subscriber_removed",
            actor_id=actor_id,
            subscriber_count=remaining,
        )

    async def publish(self, event: ActorEvent) -> None:
        """Publish an event to all subscribers for its actor.

        If the actor has no subscribers the event is buffered (bounded) until
        one connects. Every event except the close sentinel is also appended
        to the actor's history.

        Args:
            event: The ActorEvent to publish
        """
        with self._lock:
            if event.type != EventType.ACTOR_CLOSED:
                history = self._event_history[event.actor_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_ACTOR:
                    del history[: len(history) - self.MAX_HISTORY_PER_ACTOR]

            subscribers = list(self._subscribers.get(event.actor_id, []))

            if not subscribers:
                buffer = self._event_buffer[event.actor_id]
                buffer.append(event)
                if len(buffer) > self.MAX_BUFFER_PER_ACTOR:
                    del buffer[: len(buffer) - self.MAX_BUFFER_PER_ACTOR]
                logger.debug(
                    "event_buffered",
                    actor_id=event.actor_id,
                    event_type=event.type.value,
                    buffer_size=len(buffer),
                )
                return

        # Deliver with a timeout so a frozen consumer cannot stall the actor
        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    actor_id=event.actor_id,
                    event_type=event.type.value,
                )
            except Exception as e:
                logger.warning(
                    "event_delivery_failed",
                    actor_id=event.actor_id,
                    event_type=event.type.value,
                    error=str(e),
                )

        logger.debug(
            "event_published",
            actor_id=event.actor_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
            batch_id=event.batch_id,
        )

    def get_event_history(self, actor_id: str) -> list[ActorEvent]:
        """Get stored events for an actor in chronological order.

        Args:
            actor_id: The actor to get history for.

        Returns:
            A copy of the actor's event history.
        """
        with self._lock:
            return list(self._event_history.get(actor_id, []))

    async def close_actor(self, actor_id: str) -> None:
        """Close an actor stream and notify all subscribers.

        Each subscriber receives an ACTOR_CLOSED sentinel so read loops can
        exit cleanly. History is preserved for a later reconnect.

        Args:
            actor_id: The actor to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(actor_id, [])
            buffered = self._event_buffer.pop(actor_id, [])

        for queue in queues_to_signal:
            await queue.put(
                ActorEvent(
                    type=EventType.ACTOR_CLOSED,
                    actor_id=actor_id,
                    data={"reason": "actor_closed"},
                )
            )

        logger.info(
            "actor_stream_closed",
            actor_id=actor_id,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=len(buffered),
        )

    def get_subscriber_count(self, actor_id: str) -> int:
        """Return the number of subscribers for an actor."""
        with self._lock:
            return len(self._subscribers.get(actor_id, []))

    def get_active_actors(self) -> list[str]:
        """Return actor ids with at least one subscriber."""
        with self._lock:
            return list(self._subscribers.keys())


# Global event bus instance
_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance.

    Creates the instance on first call (lazy initialization).
    This function is thread-safe.

    Returns:
        The global EventBus instance
    """
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            # Double-check locking pattern
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance.

    This is primarily useful for testing to ensure a clean state
    between test runs.
    """
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
