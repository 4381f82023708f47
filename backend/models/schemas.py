"""Pydantic schemas for API request/response models.

This module defines the data models used by the HTTP API. Plan payloads reuse
the orchestration models directly so clients see the same camelCase shape the
planner produces.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from batching.types import BatchState, BatchStatus
from orchestration.types import AggregationSummary, ExecutionPlan


class EnqueueMessageRequest(BaseModel):
    """Request body for posting a message to an actor."""

    text: str = Field(
        min_length=1,
        max_length=10000,
        description="Message text as typed by the user",
        examples=["Summarize the latest release notes"],
    )
    user_id: str | None = Field(default=None, description="Sender id")
    chat_id: str | None = Field(default=None, description="Conversation id")
    username: str | None = Field(default=None, description="Optional display handle")
    request_id: str | None = Field(
        default=None,
        description="Client dedup key; generated when omitted",
        examples=["req_8f14e45f"],
    )
    event_id: str | None = Field(
        default=None,
        description="External observability record to correlate the outcome with",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Extra transport metadata stored with the message",
    )


class EnqueueMessageResponse(BaseModel):
    """Response for a posted message."""

    queued: bool = Field(description="False when the request id was a duplicate")
    batch_id: str | None = Field(default=None, description="Batch the message joined")
    request_id: str | None = Field(default=None, description="Dedup key used")


class TimerFireRequest(BaseModel):
    """Request body for a manual timer fire."""

    batch_id: str | None = Field(default=None, description="Batch the fire is for")


class TimerFireResponse(BaseModel):
    actor_id: str
    fired: bool = True


class BatchSnapshot(BaseModel):
    """Read-only view of one batch slot."""

    status: BatchStatus
    batch_id: str | None = None
    message_count: int = 0
    messages: list[str] = Field(default_factory=list)
    retry_count: int = 0
    last_heartbeat: int | None = None
    batch_started_at: int | None = None
    last_message_at: int | None = None
    next_retry_at: int | None = None
    retry_errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_batch(cls, batch: BatchState) -> "BatchSnapshot":
        return cls(
            status=batch.status,
            batch_id=batch.batch_id,
            message_count=len(batch.messages),
            messages=[message.text for message in batch.messages],
            retry_count=batch.retry_count,
            last_heartbeat=batch.last_heartbeat,
            batch_started_at=batch.batch_started_at,
            last_message_at=batch.last_message_at,
            next_retry_at=batch.next_retry_at,
            retry_errors=[record.message for record in batch.retry_errors],
        )


class ActorStateResponse(BaseModel):
    """Two-slot snapshot of an actor."""

    actor_id: str
    active: BatchSnapshot | None = None
    pending: BatchSnapshot
    history_length: int = Field(default=0, ge=0)
    updated_at: int = 0


class CreatePlanRequest(BaseModel):
    """Request body for running the plan pipeline on a parsed request."""

    task: str = Field(
        min_length=1,
        max_length=10000,
        description="The request to plan and execute",
        examples=["Research async frameworks, then compare them in a table"],
    )
    actor_id: str = Field(
        default="api",
        description="Actor whose event stream receives plan events",
    )
    plan: ExecutionPlan | None = Field(
        default=None,
        description="Pre-built plan; skips the planning call when given",
    )


class PlanResponse(BaseModel):
    """Result of a full plan pipeline run."""

    model_config = ConfigDict(populate_by_name=True)

    plan: ExecutionPlan
    response: str
    summary: AggregationSummary | None = None
    levels: list[list[str]] = Field(default_factory=list)
    validation_errors: list[str] = Field(default_factory=list)
    key_findings: list[str] = Field(default_factory=list)


class ValidatePlanRequest(BaseModel):
    plan: ExecutionPlan


class ValidatePlanResponse(BaseModel):
    """Dependency validation verdict, with levels for valid plans."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    levels: list[list[str]] = Field(default_factory=list)
    execution_order: list[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response with infrastructure status."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    coordinator_ready: bool = Field(
        default=False,
        description="Whether the batch coordinator is configured",
    )
    timer_worker_running: bool = Field(
        default=False,
        description="Whether the durable timer worker loop is running",
    )
    in_flight_timers: int = Field(
        default=0,
        description="Timer handlers currently executing",
    )
