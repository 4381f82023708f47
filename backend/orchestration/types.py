"""Data model for execution plans and their results.

Plans arrive from the planner model in camelCase JSON (``workerType``,
``dependsOn``); the models accept either the alias or the field name and
serialise by alias for the HTTP surface.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from config import Settings, settings


class WorkerType(StrEnum):
    """Categories of downstream workers a step can be routed to."""

    CODE = "code"
    RESEARCH = "research"
    GITHUB = "github"
    GENERAL = "general"


class ExpectedOutput(StrEnum):
    TEXT = "text"
    CODE = "code"
    DATA = "data"
    ACTION = "action"


class Complexity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class StepStatus(StrEnum):
    """Progress notifications emitted by the plan executor."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PlanStep(BaseModel):
    """One unit of work inside an execution plan.

    Attributes:
        id: Unique within the plan.
        description: What the step accomplishes.
        worker_type: Selects the downstream worker.
        task: Instructions handed to the worker.
        depends_on: Ids of steps that must finish first.
        priority: 1-10, higher runs first within a level.
        expected_output: Shape of the worker's result.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    description: str
    worker_type: WorkerType = Field(default=WorkerType.GENERAL, alias="workerType")
    task: str
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    priority: int = Field(default=5, ge=1, le=10)
    expected_output: ExpectedOutput = Field(default=ExpectedOutput.TEXT, alias="expectedOutput")


class ExecutionPlan(BaseModel):
    """A dependency graph of steps for one complex request."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(alias="taskId")
    summary: str
    steps: list[PlanStep] = Field(min_length=1)
    estimated_complexity: Complexity = Field(
        default=Complexity.LOW, alias="estimatedComplexity"
    )
    estimated_duration_seconds: int | None = Field(
        default=None, alias="estimatedDurationSeconds"
    )

    def get_step(self, step_id: str) -> PlanStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


class ValidationResult(BaseModel):
    """Outcome of dependency validation."""

    valid: bool
    errors: list[str] = Field(default_factory=list)


class WorkerResult(BaseModel):
    """Outcome of one executed (or skipped) step. Immutable once built."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    step_id: str = Field(alias="stepId")
    success: bool
    data: Any = None
    error: str | None = None
    duration_ms: int = Field(default=0, alias="durationMs")


@dataclass
class WorkerInput:
    """Everything a worker receives for one step."""

    step: PlanStep
    dependency_results: dict[str, WorkerResult] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    trace_id: str = ""


WorkerDispatcher = Callable[[str, WorkerInput], Awaitable[WorkerResult]]
ProgressCallback = Callable[[str, StepStatus, WorkerResult | None], Awaitable[None]]


@dataclass
class ExecutionResult:
    """Results of running every level of a plan.

    Attributes:
        results: WorkerResult per step id, including skipped steps.
        successful_steps: Ids in completion order.
        failed_steps: Ids whose dispatch failed.
        skipped_steps: Ids never dispatched.
        total_duration_ms: Wall-clock time for the whole plan.
    """

    results: dict[str, WorkerResult] = field(default_factory=dict)
    successful_steps: list[str] = field(default_factory=list)
    failed_steps: list[str] = field(default_factory=list)
    skipped_steps: list[str] = field(default_factory=list)
    total_duration_ms: int = 0

    @property
    def all_succeeded(self) -> bool:
        return not self.failed_steps and not self.skipped_steps

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": {
                step_id: result.model_dump(by_alias=True)
                for step_id, result in self.results.items()
            },
            "successfulSteps": list(self.successful_steps),
            "failedSteps": list(self.failed_steps),
            "skippedSteps": list(self.skipped_steps),
            "totalDurationMs": self.total_duration_ms,
            "allSucceeded": self.all_succeeded,
        }


class AggregationSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_steps: int = Field(alias="totalSteps")
    success_count: int = Field(alias="successCount")
    failure_count: int = Field(alias="failureCount")
    skipped_count: int = Field(alias="skippedCount")
    total_duration_ms: int = Field(alias="totalDurationMs")


class StepOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    step_id: str = Field(alias="stepId")
    success: bool
    output: Any = None
    error: str | None = None


class StepError(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    step_id: str = Field(alias="stepId")
    error: str


class AggregationResult(BaseModel):
    """Final synthesized answer plus structured per-step detail."""

    model_config = ConfigDict(populate_by_name=True)

    response: str
    summary: AggregationSummary
    step_outputs: list[StepOutput] = Field(default_factory=list, alias="stepOutputs")
    errors: list[StepError] = Field(default_factory=list)


@dataclass(frozen=True)
class PlannerConfig:
    max_steps: int = 10
    model: str | None = None
    temperature: float = 0.3

    @classmethod
    def from_settings(cls, source: Settings = settings) -> "PlannerConfig":
        return cls(max_steps=source.planner_max_steps, model=source.planner_model)


@dataclass(frozen=True)
class ExecutorConfig:
    max_parallel: int = 5
    continue_on_error: bool = False

    @classmethod
    def from_settings(cls, source: Settings = settings) -> "ExecutorConfig":
        return cls(
            max_parallel=source.executor_max_parallel,
            continue_on_error=source.executor_continue_on_error,
        )


@dataclass(frozen=True)
class AggregatorConfig:
    model: str | None = None
    max_tokens: int | None = None
    temperature: float = 0.5

    @classmethod
    def from_settings(cls, source: Settings = settings) -> "AggregatorConfig":
        return cls(model=source.aggregator_model)
