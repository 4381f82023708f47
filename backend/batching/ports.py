"""Collaborator interfaces consumed by the batch queue.

The core never depends on a concrete timer, store or chat surface; it talks
to these protocols. Durable implementations live in ``models.database`` and
``timers``; in-memory ones in ``models.memory``.
"""

from __future__ import annotations

from typing import Any, Protocol

from batching.types import ActorState, ParsedInput


class SchedulingError(Exception):
    """Raised by a Timer when a fire cannot be scheduled."""


class Timer(Protocol):
    """Durable "call handler H with payload P no earlier than T" service."""

    async def schedule(
        self,
        delay_seconds: float,
        handler_name: str,
        payload: dict[str, Any],
    ) -> None:
        """Schedule a fire. Raises SchedulingError on failure."""


class ActorStateStore(Protocol):
    """Durable per-actor state, written by whole-document replacement."""

    async def get(self, actor_id: str) -> ActorState:
        """Return the actor's state, or a fresh one if none is stored."""

    async def set(self, state: ActorState) -> None:
        """Atomically replace the actor's state."""

    async def list_actor_ids(self) -> list[str]:
        """Return every actor with stored state."""


class Transport(Protocol):
    """The chat surface that delivers progress and final text."""

    async def send(self, ctx: dict[str, Any], text: str) -> str:
        """Send a new message and return its reference."""

    async def edit(self, ctx: dict[str, Any], message_ref: str, text: str) -> None:
        """Replace the text of a previously sent message."""

    async def typing(self, ctx: dict[str, Any]) -> None:
        """Show a typing indicator."""

    def parse_context(self, ctx: dict[str, Any]) -> ParsedInput:
        """Extract the transport-neutral input from a raw inbound payload."""


class ObservabilitySink(Protocol):
    """Fire-and-forget record of message outcomes, keyed by event id."""

    async def upsert_event(self, event_id: str, status: str, **fields: Any) -> None:
        """Create or update one observability record."""
