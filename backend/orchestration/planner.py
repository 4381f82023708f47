"""Task planner: turn a natural-language request into a validated step graph.

The planner asks the planning model for a JSON plan and is tolerant of what
comes back: prose around the payload, fenced blocks, and partially-conforming
steps are all accepted. Anything that still cannot be turned into a valid
dependency graph collapses to a single-step plan, so a request is never
rejected because the model produced a bad plan.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import structlog
from pydantic import ValidationError

from events.types import LLMMetrics
from llm.client import LLMClient
from llm.parsing import extract_json_from_response
from orchestration.prompts import PLANNING_SYSTEM_PROMPT, build_planning_prompt
from orchestration.types import (
    Complexity,
    ExecutionPlan,
    ExpectedOutput,
    PlannerConfig,
    PlanStep,
    ValidationResult,
    WorkerType,
)

logger = structlog.get_logger(__name__)

FALLBACK_STEP_ID = "step_main"


class PlanValidationError(ValueError):
    """Raised when an invalid plan reaches a stage that would execute it."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("; ".join(errors) or "Invalid execution plan")


@dataclass
class PlanningContext:
    """Optional hints passed to the planner."""

    user_id: str | None = None
    platform: str | None = None
    previous_tasks: list[str] = field(default_factory=list)
    available_workers: list[str] = field(default_factory=list)
    custom_instructions: str | None = None

    def to_prompt_lines(self) -> list[str]:
        lines: list[str] = []
        if self.platform:
            lines.append(f"Platform: {self.platform}")
        if self.available_workers:
            lines.append(f"Available workers: {', '.join(self.available_workers)}")
        if self.custom_instructions:
            lines.append(f"Custom instructions: {self.custom_instructions}")
        if self.previous_tasks:
            lines.append(f"Recent tasks: {'; '.join(self.previous_tasks[-3:])}")
        return lines


def generate_task_id() -> str:
    return f"task_{uuid4().hex[:12]}"


def estimate_complexity(steps: list[PlanStep] | int) -> Complexity:
    """Rough complexity from the step count: <=2 low, <=5 medium, else high."""
    count = steps if isinstance(steps, int) else len(steps)
    if count <= 2:
        return Complexity.LOW
    if count <= 5:
        return Complexity.MEDIUM
    return Complexity.HIGH


def create_simple_plan(task: str) -> ExecutionPlan:
    """Single-step plan that hands the whole request to a general worker."""
    return ExecutionPlan(
        task_id=generate_task_id(),
        summary=f"Execute: {task[:50]}...",
        steps=[
            PlanStep(
                id=FALLBACK_STEP_ID,
                description="Execute the main task",
                worker_type=WorkerType.GENERAL,
                task=task,
                depends_on=[],
                priority=5,
                expected_output=ExpectedOutput.TEXT,
            )
        ],
        estimated_complexity=Complexity.LOW,
        estimated_duration_seconds=30,
    )


def _coerce_enum(value: Any, enum_cls: type, default: Any) -> Any:
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            return default
    return default


def _coerce_priority(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 5
    return int(min(10, max(1, value)))


def salvage_plan(parsed: dict[str, Any], original_task: str, max_steps: int = 10) -> ExecutionPlan:
    """Build a plan from a payload that failed strict validation.

    Missing ids become ``step_{n}``, priorities are clamped to 1-10,
    unknown worker types become ``general`` and unknown output kinds become
    ``text``. A payload with no usable steps yields the single-step plan.
    """
    raw_steps = parsed.get("steps")
    if not isinstance(raw_steps, list):
        raw_steps = []

    steps: list[PlanStep] = []
    for index, raw in enumerate(raw_steps[:max_steps]):
        if not isinstance(raw, dict):
            continue
        depends_on = raw.get("dependsOn", raw.get("depends_on", []))
        steps.append(
            PlanStep(
                id=str(raw.get("id") or f"step_{index + 1}"),
                description=str(raw.get("description") or "Execute step"),
                worker_type=_coerce_enum(
                    raw.get("workerType", raw.get("worker_type")),
                    WorkerType,
                    WorkerType.GENERAL,
                ),
                task=str(raw.get("task") or original_task),
                depends_on=[str(dep) for dep in depends_on] if isinstance(depends_on, list) else [],
                priority=_coerce_priority(raw.get("priority")),
                expected_output=_coerce_enum(
                    raw.get("expectedOutput", raw.get("expected_output")),
                    ExpectedOutput,
                    ExpectedOutput.TEXT,
                ),
            )
        )

    if not steps:
        return create_simple_plan(original_task)

    return ExecutionPlan(
        task_id=str(parsed.get("taskId") or generate_task_id()),
        summary=str(parsed.get("summary") or f"Execute: {original_task[:50]}..."),
        steps=steps,
        estimated_complexity=estimate_complexity(steps),
        estimated_duration_seconds=len(steps) * 10,
    )


def parse_plan_response(content: str, original_task: str, max_steps: int = 10) -> ExecutionPlan:
    """Parse a planner response, salvaging or falling back as needed."""
    parsed = extract_json_from_response(content)
    if parsed is None:
        logger.warning("plan_parse_failed", response_preview=content[:200])
        return create_simple_plan(original_task)

    try:
        return ExecutionPlan.model_validate(parsed)
    except ValidationError as e:
        logger.info("plan_salvaged", validation_errors=e.error_count())
        return salvage_plan(parsed, original_task, max_steps)


def validate_plan_dependencies(plan: ExecutionPlan) -> ValidationResult:
    """Check dependency references and acyclicity.

    Reports each dangling reference and each self-dependency as its own
    error, plus a single error if the graph contains a cycle. Self-edges
    are reported only as self-dependencies.
    """
    errors: list[str] = []
    step_ids = [step.id for step in plan.steps]
    known = set(step_ids)

    seen: set[str] = set()
    for step_id in step_ids:
        if step_id in seen:
            errors.append(f'Duplicate step id "{step_id}"')
        seen.add(step_id)

    for step in plan.steps:
        for dep_id in step.depends_on:
            if dep_id == step.id:
                errors.append(f'Step "{step.id}" cannot depend on itself')
            elif dep_id not in known:
                errors.append(f'Step "{step.id}" depends on non-existent step "{dep_id}"')

    edges = {
        step.id: [dep for dep in step.depends_on if dep != step.id and dep in known]
        for step in plan.steps
    }
    visited: set[str] = set()
    on_stack: set[str] = set()

    def has_cycle(step_id: str) -> bool:
        visited.add(step_id)
        on_stack.add(step_id)
        for dep_id in edges.get(step_id, []):
            if dep_id not in visited:
                if has_cycle(dep_id):
                    return True
            elif dep_id in on_stack:
                return True
        on_stack.discard(step_id)
        return False

    for step_id in step_ids:
        if step_id not in visited and has_cycle(step_id):
            errors.append("Plan contains circular dependencies")
            break

    return ValidationResult(valid=not errors, errors=errors)


def topological_sort_steps(steps: list[PlanStep]) -> list[str]:
    """Step ids ordered so every step follows its dependencies.

    Unknown dependency ids are ignored. On a cycle, the step that closes it
    is emitted where first reached.
    """
    step_map = {step.id: step for step in steps}
    visited: set[str] = set()
    ordered: list[str] = []

    def visit(step_id: str) -> None:
        if step_id in visited or step_id not in step_map:
            return
        visited.add(step_id)
        for dep_id in step_map[step_id].depends_on:
            visit(dep_id)
        ordered.append(step_id)

    for step in steps:
        visit(step.id)
    return ordered


async def create_plan(
    request: str,
    llm_client: LLMClient,
    config: PlannerConfig | None = None,
    context: PlanningContext | None = None,
    actor_id: str | None = None,
    on_llm_call: Callable[[LLMMetrics], None] | None = None,
    fallback_on_invalid: bool = True,
) -> ExecutionPlan:
    """Create an execution plan for ``request``.

    Args:
        request: The user's task.
        llm_client: Provider used for planning.
        config: Step limit and model; defaults from settings.
        context: Optional planning hints.
        actor_id: Tags LLM metric events.
        on_llm_call: Receives the planning call's metrics.
        fallback_on_invalid: Swap a plan that fails
            ``validate_plan_dependencies`` for the single-step plan. Callers
            that validate on their own pass False.

    Returns:
        The parsed plan, or the single-step fallback plan.

    Raises:
        Exception: Provider errors propagate so the caller can retry.
    """
    config = config or PlannerConfig.from_settings()
    start = time.time()
    logger.info(
        "plan_creation_started",
        actor_id=actor_id,
        task_length=len(request),
        max_steps=config.max_steps,
    )

    messages = [
        {"role": "system", "content": PLANNING_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": build_planning_prompt(
                request,
                config.max_steps,
                context.to_prompt_lines() if context else None,
            ),
        },
    ]
    response = await llm_client.call(
        messages=messages,
        model=config.model,
        temperature=config.temperature,
        actor_id=actor_id,
    )
    if on_llm_call is not None:
        on_llm_call(response.metrics)

    plan = parse_plan_response(response.content, request, config.max_steps)
    if len(plan.steps) > config.max_steps:
        plan = plan.model_copy(update={"steps": plan.steps[: config.max_steps]})

    validation = validate_plan_dependencies(plan)
    if fallback_on_invalid and not validation.valid:
        logger.warning(
            "plan_invalid_using_fallback",
            actor_id=actor_id,
            task_id=plan.task_id,
            errors=validation.errors,
        )
        plan = create_simple_plan(request)

    logger.info(
        "plan_created",
        actor_id=actor_id,
        task_id=plan.task_id,
        step_count=len(plan.steps),
        complexity=plan.estimated_complexity.value,
        duration_ms=int((time.time() - start) * 1000),
    )
    return plan
