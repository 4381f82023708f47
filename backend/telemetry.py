"""Debug/telemetry accumulator for one unit of work.

A ``BatchTelemetry`` is created when a batch is promoted, filled in as the
batch moves through its stages, and serialised once at the boundary: the
observability upsert and the final batch event. Core control flow never reads
it back.

Usage:
    >>> telemetry = BatchTelemetry(actor_id="chat_42", batch_id="b1")
    >>> telemetry.record_stage(Stage.PROCESSING)
    >>> telemetry.record_llm_call(response.metrics)
    >>> telemetry.finish()
    >>> telemetry.to_dict()["total_tokens"]
"""

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from events.types import LLMMetrics

logger = structlog.get_logger(__name__)


class Stage(StrEnum):
    """Milestones a batch passes through."""

    QUEUED = "queued"
    PROMOTED = "promoted"
    PROCESSING = "processing"
    RESPONDED = "responded"
    RETRY_SCHEDULED = "retry_scheduled"
    NOTIFIED = "notified"
    FAILED = "failed"
    DONE = "done"


@dataclass
class StageRecord:
    """One stage transition with its time offset from the start."""

    stage: Stage
    offset_ms: int
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchTelemetry:
    """Accumulated telemetry for a single batch attempt.

    Attributes:
        actor_id: Owning actor.
        batch_id: Batch being processed.
        route: ``chat``, ``orchestration`` or ``clear`` once decided.
        stages: Stage transitions in order.
        prompt_tokens: Input tokens across all LLM calls.
        completion_tokens: Output tokens across all LLM calls.
        llm_calls: Number of LLM invocations.
        models: Distinct models used, in first-use order.
        plan_steps: Steps in the executed plan, if any.
        steps_succeeded: Steps that completed.
        steps_failed: Steps that failed.
        steps_skipped: Steps skipped by dependency failure.
        discarded_messages: Messages dropped by a clear command.
        errors: Error texts recorded along the way.
        duration_ms: Wall-clock duration, set by finish().
        started_at: Unix timestamp when tracking began.
    """

    actor_id: str
    batch_id: str | None = None
    route: str | None = None
    stages: list[StageRecord] = field(default_factory=list)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    llm_calls: int = 0
    models: list[str] = field(default_factory=list)
    plan_steps: int = 0
    steps_succeeded: int = 0
    steps_failed: int = 0
    steps_skipped: int = 0
    discarded_messages: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
    started_at: float = field(default_factory=time.time)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def _offset_ms(self) -> int:
        return int((time.time() - self.started_at) * 1000)

    def record_stage(self, stage: Stage, **details: Any) -> None:
        """Append a stage transition."""
        self.stages.append(StageRecord(stage=stage, offset_ms=self._offset_ms(), details=details))

    def record_route(self, route: str) -> None:
        self.route = route

    def record_llm_call(self, metrics: LLMMetrics) -> None:
        """Add one LLM call's token usage."""
        self.prompt_tokens += metrics.input_tokens
        self.completion_tokens += metrics.output_tokens
        self.llm_calls += 1
        if metrics.model and metrics.model not in self.models:
            self.models.append(metrics.model)

    def record_plan(
        self,
        total_steps: int,
        succeeded: int,
        failed: int,
        skipped: int,
    ) -> None:
        """Record step counts from a plan execution."""
        self.plan_steps = total_steps
        self.steps_succeeded = succeeded
        self.steps_failed = failed
        self.steps_skipped = skipped

    def record_error(self, error: str) -> None:
        self.errors.append(error)

    def finish(self) -> "BatchTelemetry":
        """Stamp the final duration and return self for chaining."""
        self.duration_ms = self._offset_ms()
        logger.debug(
            "batch_telemetry_finished",
            actor_id=self.actor_id,
            batch_id=self.batch_id,
            route=self.route,
            total_tokens=self.total_tokens,
            duration_ms=self.duration_ms,
        )
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dict for event payloads and observability rows."""
        return {
            "actor_id": self.actor_id,
            "batch_id": self.batch_id,
            "route": self.route,
            "stages": [
                {"stage": record.stage.value, "offset_ms": record.offset_ms, **record.details}
                for record in self.stages
            ],
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "llm_calls": self.llm_calls,
            "models": list(self.models),
            "plan_steps": self.plan_steps,
            "steps_succeeded": self.steps_succeeded,
            "steps_failed": self.steps_failed,
            "steps_skipped": self.steps_skipped,
            "discarded_messages": self.discarded_messages,
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
        }
