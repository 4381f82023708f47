"""Data model for the per-actor batch queue.

All timestamps are integer milliseconds since the Unix epoch. The actor state
is a single pydantic document so that a state store can persist it as one
JSON blob and replace it atomically.
"""

import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from config import Settings, settings


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class BatchStatus(StrEnum):
    """Lifecycle status of a batch.

    A pending slot moves idle -> collecting. The active slot is processing
    while a unit of work runs. ``failed`` covers two cases told apart by
    ``BatchState.next_retry_at``: with a retry time the batch is parked in the
    active slot awaiting that retry, without one it has failed for good and
    only appears in the terminal report, never in a stored slot.
    """

    IDLE = "idle"
    COLLECTING = "collecting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DELEGATED = "delegated"


class PendingMessage(BaseModel):
    """One inbound message awaiting processing.

    Attributes:
        text: Message body as typed by the user.
        received_at: Arrival time.
        request_id: Dedup key, client- or server-generated.
        user_id: Sender id on the originating surface.
        chat_id: Conversation id on the originating surface.
        username: Optional display handle.
        correlation_id: Links the message to an external observability record.
        original_context: Opaque transport payload needed to reply later.
    """

    text: str
    received_at: int
    request_id: str
    user_id: str | None = None
    chat_id: str | None = None
    username: str | None = None
    correlation_id: str | None = None
    original_context: dict[str, Any] = Field(default_factory=dict)


class RetryErrorRecord(BaseModel):
    """A failure recorded against a batch before it was retried."""

    timestamp: int
    message: str


class BatchState(BaseModel):
    """One coalescing window's worth of messages plus execution metadata.

    Attributes:
        status: Current lifecycle status.
        messages: Messages in arrival order.
        batch_id: Opaque id assigned on the first message.
        retry_count: Failed attempts so far.
        last_heartbeat: Last liveness stamp written by the executor.
        batch_started_at: Arrival time of the first message.
        last_message_at: Arrival time of the latest message.
        retry_errors: Failures that led to retries.
        next_retry_at: When a failed active batch becomes due again.
        message_ref: Transport reference of the "thinking" placeholder.
    """

    status: BatchStatus = BatchStatus.IDLE
    messages: list[PendingMessage] = Field(default_factory=list)
    batch_id: str | None = None
    retry_count: int = 0
    last_heartbeat: int | None = None
    batch_started_at: int | None = None
    last_message_at: int | None = None
    retry_errors: list[RetryErrorRecord] = Field(default_factory=list)
    next_retry_at: int | None = None
    message_ref: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.messages

    @property
    def awaiting_retry(self) -> bool:
        """Failed but parked for another attempt at ``next_retry_at``."""
        return self.status == BatchStatus.FAILED and self.next_retry_at is not None


class ActorState(BaseModel):
    """Everything persisted for one actor.

    The two slots are the only shared mutable resource per actor: ``active``
    is the unit of work being executed (or awaiting retry) and ``pending``
    collects new arrivals. New messages are only ever appended to ``pending``.
    """

    actor_id: str
    active: BatchState | None = None
    pending: BatchState = Field(default_factory=BatchState)
    history: list[dict[str, Any]] = Field(default_factory=list)
    user_id: str | None = None
    chat_id: str | None = None
    updated_at: int = 0


class ParsedInput(BaseModel):
    """Transport-neutral view of an inbound message."""

    text: str
    user_id: str | None = None
    chat_id: str | None = None
    username: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class EnqueueResult(BaseModel):
    """Outcome of ``BatchCoordinator.enqueue``."""

    queued: bool
    batch_id: str | None = None
    request_id: str | None = None


class ScheduleReason(StrEnum):
    """Why the batch queue asked the timer for a fire."""

    MAX_MESSAGES = "max_messages"
    MAX_WINDOW = "max_window"
    FIRST_MESSAGE = "first_message"
    ORPHANED = "orphaned_pending_batch"
    RECOVERED_FROM_STUCK = "recovered_from_stuck"
    COALESCING = "coalescing_window"
    PENDING_AFTER_COMPLETION = "pending_after_completion"
    AWAITING_ACTIVE = "awaiting_active"
    RETRY = "retry"
    RECOVERY = "startup_recovery"


@dataclass(frozen=True)
class ScheduleDecision:
    """A timer request produced by the enqueue scheduling rules."""

    reason: ScheduleReason
    delay_seconds: float


@dataclass(frozen=True)
class StuckCheck:
    """Result of the stuck predicate, with a human-readable reason."""

    is_stuck: bool
    reason: str | None = None


@dataclass(frozen=True)
class BatchConfig:
    """Coalescing limits for the pending slot."""

    window_ms: int = 500
    max_window_ms: int = 5000
    max_messages: int = 10
    immediate_delay_seconds: float = 1.0

    @classmethod
    def from_settings(cls, source: Settings = settings) -> "BatchConfig":
        return cls(
            window_ms=source.batch_window_ms,
            max_window_ms=source.batch_max_window_ms,
            max_messages=source.batch_max_messages,
            immediate_delay_seconds=source.batch_immediate_delay_seconds,
        )


@dataclass(frozen=True)
class RetryConfig:
    """Exponential backoff parameters for failed batches."""

    max_retries: int = 6
    initial_delay_ms: int = 2000
    max_delay_ms: int = 64000
    multiplier: float = 2.0

    @classmethod
    def from_settings(cls, source: Settings = settings) -> "RetryConfig":
        return cls(
            max_retries=source.retry_max_retries,
            initial_delay_ms=source.retry_initial_delay_ms,
            max_delay_ms=source.retry_max_delay_ms,
            multiplier=source.retry_backoff_multiplier,
        )


@dataclass(frozen=True)
class HeartbeatConfig:
    """Liveness parameters for an in-flight batch."""

    max_age_ms: int = 30000
    interval_ms: int = 5000

    @classmethod
    def from_settings(cls, source: Settings = settings) -> "HeartbeatConfig":
        return cls(
            max_age_ms=source.heartbeat_max_age_ms,
            interval_ms=source.heartbeat_interval_ms,
        )
