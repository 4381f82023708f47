"""Event type definitions for the actor event system.

This module defines the events emitted while messages are batched, processed,
planned and delivered. Every meaningful state change of an actor produces an
event that subscribers (the WebSocket stream, tests) can observe.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the system.

    Events are categorized by:
    - Batch lifecycle: queueing, scheduling, promotion, completion and retries
    - Plan lifecycle: planning, step execution and aggregation
    - Delivery: messages sent or edited through the transport
    - Observability: LLM metrics and provider errors
    """

    # Batch lifecycle
    BATCH_QUEUED = "batch_queued"
    BATCH_DUPLICATE = "batch_duplicate"
    BATCH_SCHEDULED = "batch_scheduled"
    BATCH_PROMOTED = "batch_promoted"
    BATCH_HEARTBEAT = "batch_heartbeat"
    BATCH_COMPLETE = "batch_complete"
    BATCH_RETRY_SCHEDULED = "batch_retry_scheduled"
    BATCH_FAILED = "batch_failed"
    BATCH_STUCK_RECOVERED = "batch_stuck_recovered"
    BATCH_CLEARED = "batch_cleared"

    # Plan lifecycle
    PLAN_CREATED = "plan_created"
    PLAN_INVALID = "plan_invalid"
    STEP_STARTED = "step_started"
    STEP_COMPLETE = "step_complete"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"
    AGGREGATION_STARTED = "aggregation_started"
    AGGREGATION_COMPLETE = "aggregation_complete"

    # Delivery
    MESSAGE_SENT = "message_sent"
    MESSAGE_EDITED = "message_edited"
    TYPING = "typing"

    # Observability
    LLM_CALL_COMPLETE = "llm_call_complete"
    AGENT_ERROR = "agent_error"

    # Stream control
    ACTOR_CLOSED = "actor_closed"


class ActorEvent(BaseModel):
    """An event emitted for one actor.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - actor_id: Which actor (conversation) this event belongs to
    - batch_id: The batch being processed, if any
    - data: Event-specific payload

    Payload schemas by event type:

    BATCH_QUEUED:
        - request_id: str - Dedup key of the queued message
        - pending_count: int - Messages now waiting in the pending slot

    BATCH_SCHEDULED:
        - reason: str - Why the timer was scheduled
        - delay_seconds: float - Delay passed to the timer

    BATCH_PROMOTED:
        - message_count: int - Messages in the promoted batch

    BATCH_RETRY_SCHEDULED:
        - retry_count: int - Attempt number after this failure
        - delay_seconds: int - Delay until the retry fires
        - error: str - The failure that triggered the retry

    BATCH_FAILED:
        - retry_count: int - Attempts made before giving up
        - error: str - The final failure

    STEP_STARTED / STEP_COMPLETE / STEP_FAILED / STEP_SKIPPED:
        - step_id: str - Plan step identifier
        - worker_type: str - Worker category
        - duration_ms: int - Present once the step has finished

    MESSAGE_SENT / MESSAGE_EDITED:
        - message_ref: str - Transport reference of the message
        - text: str - Delivered text

    LLM_CALL_COMPLETE:
        - model: str - Model used
        - input_tokens: int - Input token count
        - output_tokens: int - Output token count
        - latency_ms: int - Latency in milliseconds
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    actor_id: str
    batch_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "batch_promoted",
                    "timestamp": 1699876543.123,
                    "actor_id": "chat_42",
                    "batch_id": "b7f3c2d1",
                    "data": {"message_count": 2},
                }
            ]
        }
    }


class LLMMetrics(BaseModel):
    """Token and latency metrics for a single LLM call.

    Attributes:
        model: The model identifier (e.g., "openai/gpt-4o-mini")
        input_tokens: Number of tokens in the prompt
        output_tokens: Number of tokens in the response
        latency_ms: Time taken for the LLM call in milliseconds
    """

    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used in this call."""
        return self.input_tokens + self.output_tokens
