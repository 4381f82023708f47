"""Per-actor message batching: coalescing, promotion, retries and recovery."""

from batching.coordinator import FAILURE_MESSAGE, TIMER_HANDLER, BatchCoordinator
from batching.ports import SchedulingError
from batching.processor import BatchProcessor, ProcessingOutcome, Route, choose_route
from batching.types import (
    ActorState,
    BatchConfig,
    BatchState,
    BatchStatus,
    EnqueueResult,
    HeartbeatConfig,
    ParsedInput,
    PendingMessage,
    RetryConfig,
)

__all__ = [
    "FAILURE_MESSAGE",
    "TIMER_HANDLER",
    "ActorState",
    "BatchConfig",
    "BatchCoordinator",
    "BatchProcessor",
    "BatchState",
    "BatchStatus",
    "EnqueueResult",
    "HeartbeatConfig",
    "ParsedInput",
    "PendingMessage",
    "ProcessingOutcome",
    "RetryConfig",
    "Route",
    "SchedulingError",
    "choose_route",
]
