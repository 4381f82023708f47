"""DAG task orchestration: plan, validate, group, execute and aggregate."""

from orchestration.aggregator import aggregate_results, extract_key_findings, quick_aggregate
from orchestration.executor import execute_plan
from orchestration.graph import OrchestrationGraph, create_orchestration_graph
from orchestration.grouper import group_steps_by_level, optimize_plan
from orchestration.planner import (
    PlanValidationError,
    create_plan,
    topological_sort_steps,
    validate_plan_dependencies,
)
from orchestration.types import (
    AggregationResult,
    ExecutionPlan,
    ExecutionResult,
    PlanStep,
    WorkerResult,
)
from orchestration.workers import (
    UnknownWorkerTypeError,
    WorkerRegistry,
    create_mock_dispatcher,
    create_worker_dispatcher,
)

__all__ = [
    "AggregationResult",
    "ExecutionPlan",
    "ExecutionResult",
    "OrchestrationGraph",
    "PlanStep",
    "PlanValidationError",
    "UnknownWorkerTypeError",
    "WorkerRegistry",
    "WorkerResult",
    "aggregate_results",
    "create_mock_dispatcher",
    "create_orchestration_graph",
    "create_plan",
    "create_worker_dispatcher",
    "execute_plan",
    "extract_key_findings",
    "group_steps_by_level",
    "optimize_plan",
    "quick_aggregate",
    "topological_sort_steps",
    "validate_plan_dependencies",
]
