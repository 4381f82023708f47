"""WebSocket handler for real-time actor event streaming.

Clients connect to ``/ws/actors/{actor_id}`` to receive every event the
actor produces: batch lifecycle, plan steps, and the replies delivered by the
event-bus transport. Clients may also post messages over the same socket.
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events import ActorEvent, EventType, get_event_bus

if TYPE_CHECKING:
    from batching.coordinator import BatchCoordinator

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_coordinator: "BatchCoordinator | None" = None


def set_coordinator(coordinator: "BatchCoordinator") -> None:
    """Set the coordinator used by WebSocket message commands."""
    global _coordinator
    _coordinator = coordinator
    logger.info("websocket_coordinator_configured")


@websocket_router.websocket("/ws/actors/{actor_id}")
async def websocket_endpoint(websocket: WebSocket, actor_id: str) -> None:
    """Stream an actor's events and accept inbound commands.

    Server -> Client: every ActorEvent for the actor, history first.
    Client -> Server: ``{"type": "message", "text": ...}`` and ``ping``.

    Args:
        websocket: The WebSocket connection.
        actor_id: The actor to stream events for.
    """
    await websocket.accept()
    logger.info("websocket_connected", actor_id=actor_id)

    event_bus = get_event_bus()

    # Subscribe before reading history so nothing published in between is lost.
    queue = event_bus.subscribe(actor_id)

    try:
        last_replay_timestamp: float = 0.0
        for event in event_bus.get_event_history(actor_id):
            await websocket.send_json(event.model_dump(mode="json"))
            last_replay_timestamp = event.timestamp

        async def send_events() -> None:
            try:
                while True:
                    event = await queue.get()
                    if event.type == EventType.ACTOR_CLOSED:
                        logger.info("actor_closed_sentinel", actor_id=actor_id)
                        break
                    if event.timestamp <= last_replay_timestamp:
                        continue
                    await websocket.send_json(event.model_dump(mode="json"))
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", actor_id=actor_id)
            except Exception as e:
                logger.error("websocket_send_error", actor_id=actor_id, error=str(e))

        async def receive_commands() -> None:
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", actor_id=actor_id)
                        continue
                    command_type = data.get("type")
                    if command_type == "message":
                        await handle_message_command(actor_id, data)
                    elif command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning(
                            "unknown_command",
                            actor_id=actor_id,
                            command_type=command_type,
                        )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", actor_id=actor_id)
            except Exception as e:
                logger.error("websocket_receive_error", actor_id=actor_id, error=str(e))

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        _, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", actor_id=actor_id)
    except Exception as e:
        logger.error("websocket_error", actor_id=actor_id, error=str(e))
    finally:
        event_bus.unsubscribe(actor_id, queue)
        logger.info("websocket_cleanup_complete", actor_id=actor_id)


async def handle_message_command(actor_id: str, data: dict[str, Any]) -> None:
    """Queue a message received over the socket."""
    text = data.get("text")
    if _coordinator is None or not isinstance(text, str) or not text.strip():
        await get_event_bus().publish(
            ActorEvent(
                type=EventType.AGENT_ERROR,
                actor_id=actor_id,
                data={"error": "Message rejected", "phase": "enqueue"},
            )
        )
        return

    ctx = {key: value for key, value in data.items() if key != "type"}
    ctx["actor_id"] = actor_id
    try:
        await _coordinator.enqueue(actor_id, ctx)
    except Exception as e:
        logger.error("ws_enqueue_failed", actor_id=actor_id, error=str(e))
        await get_event_bus().publish(
            ActorEvent(
                type=EventType.AGENT_ERROR,
                actor_id=actor_id,
                data={"error": str(e), "phase": "enqueue"},
            )
        )
