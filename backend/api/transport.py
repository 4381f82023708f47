"""Transport that delivers replies over the event bus.

HTTP clients post messages and read replies from the actor's WebSocket
stream. Sent and edited messages are published as MESSAGE_SENT and
MESSAGE_EDITED events. The latest text of the most recent references per
actor is kept in memory so edits can be checked and looked up.
"""

from collections import OrderedDict, defaultdict
from typing import Any
from uuid import uuid4

import structlog

from batching.types import ParsedInput
from events.bus import EventBus
from events.types import ActorEvent, EventType

logger = structlog.get_logger(__name__)


class EventBusTransport:
    """``Transport`` backed by the in-process ``EventBus``.

    The reply context is the raw message payload; its ``actor_id`` picks the
    event stream.

    Only the newest ``MAX_MESSAGES_PER_ACTOR`` references per actor are
    remembered; editing an older one raises ``KeyError`` and the caller falls
    back to sending a new message.
    """

    MAX_MESSAGES_PER_ACTOR = 20

    def __init__(self, event_bus: EventBus) -> None:
        self.event_bus = event_bus
        self._messages: dict[str, OrderedDict[str, str]] = defaultdict(OrderedDict)

    @staticmethod
    def _actor_id(ctx: dict[str, Any]) -> str:
        actor_id = ctx.get("actor_id")
        if not actor_id:
            raise ValueError("Reply context has no actor_id")
        return str(actor_id)

    async def send(self, ctx: dict[str, Any], text: str) -> str:
        actor_id = self._actor_id(ctx)
        message_ref = f"msg_{uuid4().hex[:12]}"
        messages = self._messages[actor_id]
        messages[message_ref] = text
        while len(messages) > self.MAX_MESSAGES_PER_ACTOR:
            messages.popitem(last=False)
        await self.event_bus.publish(
            ActorEvent(
                type=EventType.MESSAGE_SENT,
                actor_id=actor_id,
                data={"message_ref": message_ref, "text": text},
            )
        )
        return message_ref

    async def edit(self, ctx: dict[str, Any], message_ref: str, text: str) -> None:
        actor_id = self._actor_id(ctx)
        messages = self._messages.get(actor_id)
        if messages is None or message_ref not in messages:
            raise KeyError(f"Unknown message reference: {message_ref}")
        messages[message_ref] = text
        await self.event_bus.publish(
            ActorEvent(
                type=EventType.MESSAGE_EDITED,
                actor_id=actor_id,
                data={"message_ref": message_ref, "text": text},
            )
        )

    def get_text(self, actor_id: str, message_ref: str) -> str | None:
        """Latest text of a remembered message, or None."""
        messages = self._messages.get(actor_id)
        return messages.get(message_ref) if messages is not None else None

    def tracked_count(self, actor_id: str) -> int:
        messages = self._messages.get(actor_id)
        return len(messages) if messages is not None else 0

    async def typing(self, ctx: dict[str, Any]) -> None:
        await self.event_bus.publish(
            ActorEvent(type=EventType.TYPING, actor_id=self._actor_id(ctx))
        )

    def parse_context(self, ctx: dict[str, Any]) -> ParsedInput:
        metadata = dict(ctx.get("metadata") or {})
        for key in ("request_id", "event_id"):
            if ctx.get(key):
                metadata[key] = ctx[key]
        return ParsedInput(
            text=str(ctx.get("text", "")),
            user_id=ctx.get("user_id"),
            chat_id=ctx.get("chat_id"),
            username=ctx.get("username"),
            metadata=metadata,
        )
