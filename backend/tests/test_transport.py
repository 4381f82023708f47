"""Tests for api/transport.py -- replies delivered over the event bus."""

import pytest

from api.transport import EventBusTransport
from events.bus import EventBus
from events.types import EventType


class TestEventBusTransport:
    async def test_send_publishes_and_returns_ref(self, event_bus: EventBus) -> None:
        transport = EventBusTransport(event_bus)

        ref = await transport.send({"actor_id": "chat_1"}, "Thinking...")

        event = event_bus.get_event_history("chat_1")[0]
        assert event.type == EventType.MESSAGE_SENT
        assert event.data == {"message_ref": ref, "text": "Thinking..."}
        assert transport.get_text("chat_1", ref) == "Thinking..."

    async def test_edit_replaces_text(self, event_bus: EventBus) -> None:
        transport = EventBusTransport(event_bus)
        ref = await transport.send({"actor_id": "chat_1"}, "Thinking...")

        await transport.edit({"actor_id": "chat_1"}, ref, "Final answer")

        assert transport.get_text("chat_1", ref) == "Final answer"
        assert event_bus.get_event_history("chat_1")[-1].type == EventType.MESSAGE_EDITED

    async def test_edit_unknown_ref_raises(self, event_bus: EventBus) -> None:
        with pytest.raises(KeyError):
            await EventBusTransport(event_bus).edit({"actor_id": "chat_1"}, "msg_x", "t")

    async def test_remembered_messages_are_bounded_per_actor(
        self, event_bus: EventBus
    ) -> None:
        transport = EventBusTransport(event_bus)
        ctx = {"actor_id": "chat_1"}
        refs = []
        for i in range(EventBusTransport.MAX_MESSAGES_PER_ACTOR * 3):
            ref = await transport.send(ctx, "Thinking...")
            await transport.edit(ctx, ref, f"answer {i}" * 50)
            refs.append(ref)

        assert transport.tracked_count("chat_1") == EventBusTransport.MAX_MESSAGES_PER_ACTOR
        assert transport.get_text("chat_1", refs[0]) is None
        assert transport.get_text("chat_1", refs[-1]) is not None
        with pytest.raises(KeyError):
            await transport.edit(ctx, refs[0], "too late")

    async def test_refs_are_scoped_to_their_actor(self, event_bus: EventBus) -> None:
        transport = EventBusTransport(event_bus)
        ref = await transport.send({"actor_id": "chat_1"}, "hi")
        with pytest.raises(KeyError):
            await transport.edit({"actor_id": "chat_2"}, ref, "hijack")

    async def test_missing_actor_id_raises(self, event_bus: EventBus) -> None:
        with pytest.raises(ValueError, match="actor_id"):
            await EventBusTransport(event_bus).send({}, "hi")

    async def test_typing(self, event_bus: EventBus) -> None:
        await EventBusTransport(event_bus).typing({"actor_id": "chat_1"})
        assert event_bus.get_event_history("chat_1")[0].type == EventType.TYPING

    def test_parse_context_folds_ids_into_metadata(self, event_bus: EventBus) -> None:
        parsed = EventBusTransport(event_bus).parse_context(
            {
                "text": "hello",
                "user_id": "u1",
                "request_id": "req_1",
                "event_id": "evt_1",
                "metadata": {"source": "web"},
            }
        )

        assert parsed.text == "hello"
        assert parsed.user_id == "u1"
        assert parsed.metadata == {"source": "web", "request_id": "req_1", "event_id": "evt_1"}
