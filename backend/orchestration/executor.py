"""Plan executor: run dependency levels in order, steps within a level in parallel.

Every step in level N finishes (or is marked skipped) before level N+1 is
dispatched. A step whose dependencies failed or were skipped is never
dispatched; the skip propagates transitively through later levels.
"""

import asyncio
import time
from typing import Any

import structlog

from orchestration.grouper import group_steps_by_level
from orchestration.planner import PlanValidationError, validate_plan_dependencies
from orchestration.types import (
    ExecutionPlan,
    ExecutionResult,
    ExecutorConfig,
    PlanStep,
    ProgressCallback,
    StepStatus,
    WorkerDispatcher,
    WorkerInput,
    WorkerResult,
)

logger = structlog.get_logger(__name__)

EARLIER_FAILURE_ERROR = "Skipped due to earlier failure"


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


async def _notify(
    on_progress: ProgressCallback | None,
    step_id: str,
    status: StepStatus,
    result: WorkerResult | None = None,
) -> None:
    if on_progress is None:
        return
    try:
        await on_progress(step_id, status, result)
    except Exception as e:
        logger.warning(
            "progress_callback_failed",
            step_id=step_id,
            status=status.value,
            error=str(e),
        )


async def _execute_step(
    step: PlanStep,
    dispatcher: WorkerDispatcher,
    results: dict[str, WorkerResult],
    context: dict[str, Any],
    trace_id: str,
    semaphore: asyncio.Semaphore,
    on_progress: ProgressCallback | None,
) -> WorkerResult:
    async with semaphore:
        start = time.monotonic()
        await _notify(on_progress, step.id, StepStatus.STARTED)
        logger.info(
            "step_started",
            trace_id=trace_id,
            step_id=step.id,
            worker_type=str(step.worker_type),
        )

        worker_input = WorkerInput(
            step=step,
            dependency_results={
                dep_id: results[dep_id] for dep_id in step.depends_on if dep_id in results
            },
            context=context,
            trace_id=trace_id,
        )

        try:
            result = await dispatcher(str(step.worker_type), worker_input)
            result = result.model_copy(
                update={"step_id": step.id, "duration_ms": _elapsed_ms(start)}
            )
        except Exception as e:
            result = WorkerResult(
                step_id=step.id,
                success=False,
                error=str(e) or type(e).__name__,
                duration_ms=_elapsed_ms(start),
            )
            logger.error(
                "step_dispatch_failed",
                trace_id=trace_id,
                step_id=step.id,
                error=str(e),
            )

        status = StepStatus.COMPLETED if result.success else StepStatus.FAILED
        await _notify(on_progress, step.id, status, result)
        logger.info(
            "step_finished",
            trace_id=trace_id,
            step_id=step.id,
            success=result.success,
            duration_ms=result.duration_ms,
        )
        return result


async def execute_plan(
    plan: ExecutionPlan,
    dispatcher: WorkerDispatcher,
    config: ExecutorConfig | None = None,
    context: dict[str, Any] | None = None,
    on_progress: ProgressCallback | None = None,
    trace_id: str | None = None,
) -> ExecutionResult:
    """Execute every level of ``plan``.

    Args:
        plan: A plan whose dependencies validate.
        dispatcher: Routes each step to a worker by ``worker_type``.
        config: Parallelism and failure policy; defaults from settings.
        context: Opaque caller context forwarded to workers.
        on_progress: Awaited with ``(step_id, status, result)``.
        trace_id: Correlation id; defaults to ``{task_id}_{epoch_ms}``.

    Returns:
        ExecutionResult with a WorkerResult for every step.

    Raises:
        PlanValidationError: If the plan's dependencies are invalid.
    """
    validation = validate_plan_dependencies(plan)
    if not validation.valid:
        raise PlanValidationError(validation.errors)

    config = config or ExecutorConfig.from_settings()
    context = context or {}
    trace_id = trace_id or f"{plan.task_id}_{int(time.time() * 1000)}"
    start = time.monotonic()
    semaphore = asyncio.Semaphore(max(1, config.max_parallel))
    outcome = ExecutionResult()

    levels = group_steps_by_level(plan.steps)
    logger.info(
        "plan_execution_started",
        trace_id=trace_id,
        task_id=plan.task_id,
        step_count=len(plan.steps),
        level_count=len(levels),
        max_parallel=config.max_parallel,
    )

    for level_index, level in enumerate(levels):
        blocked = set(outcome.failed_steps) | set(outcome.skipped_steps)
        runnable: list[PlanStep] = []
        for step in level:
            failed_deps = [d for d in step.depends_on if d in outcome.failed_steps]
            skipped_deps = [d for d in step.depends_on if d in outcome.skipped_steps]
            if any(dep in blocked for dep in step.depends_on):
                skipped = WorkerResult(
                    step_id=step.id,
                    success=False,
                    error=(
                        "Skipped due to failed dependencies: "
                        f"{', '.join(failed_deps + skipped_deps)}"
                    ),
                )
                outcome.results[step.id] = skipped
                outcome.skipped_steps.append(step.id)
                await _notify(on_progress, step.id, StepStatus.SKIPPED, skipped)
            else:
                runnable.append(step)

        level_results = await asyncio.gather(
            *[
                _execute_step(
                    step,
                    dispatcher,
                    outcome.results,
                    context,
                    trace_id,
                    semaphore,
                    on_progress,
                )
                for step in runnable
            ]
        )

        level_failed = False
        for result in level_results:
            outcome.results[result.step_id] = result
            if result.success:
                outcome.successful_steps.append(result.step_id)
            else:
                outcome.failed_steps.append(result.step_id)
                level_failed = True

        if level_failed and not config.continue_on_error:
            for later_level in levels[level_index + 1 :]:
                for step in later_level:
                    skipped = WorkerResult(
                        step_id=step.id,
                        success=False,
                        error=EARLIER_FAILURE_ERROR,
                    )
                    outcome.results[step.id] = skipped
                    outcome.skipped_steps.append(step.id)
                    await _notify(on_progress, step.id, StepStatus.SKIPPED, skipped)
            logger.warning(
                "plan_execution_halted",
                trace_id=trace_id,
                level=level_index,
                failed_steps=list(outcome.failed_steps),
            )
            break

    outcome.total_duration_ms = _elapsed_ms(start)
    logger.info(
        "plan_execution_completed",
        trace_id=trace_id,
        task_id=plan.task_id,
        success_count=len(outcome.successful_steps),
        failure_count=len(outcome.failed_steps),
        skipped_count=len(outcome.skipped_steps),
        total_duration_ms=outcome.total_duration_ms,
    )
    return outcome
