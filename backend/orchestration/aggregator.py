"""Result aggregator: merge step outputs into one response.

``aggregate_results`` asks the aggregation model to synthesize a narrative
from every successful step. When the provider errors it falls back to
``quick_aggregate``, a deterministic Markdown rendering that depends on
nothing external. When no step succeeded both paths return the same
failure report.
"""

import json
import re
import time
from collections.abc import Callable
from typing import Any

import structlog

from events.types import LLMMetrics
from llm.client import LLMClient
from llm.parsing import truncate
from orchestration.prompts import AGGREGATION_SYSTEM_PROMPT, build_aggregation_prompt
from orchestration.types import (
    AggregationResult,
    AggregationSummary,
    AggregatorConfig,
    ExecutionPlan,
    ExecutionResult,
    StepError,
    StepOutput,
)

logger = structlog.get_logger(__name__)

SYNTHESIS_OUTPUT_LIMIT = 2000
SIMPLE_OUTPUT_LIMIT = 1000
MAX_KEY_FINDINGS = 5

_BULLET_RE = re.compile(r"^[•\-*]\s+(.+)$", re.MULTILINE)


def _stringify(output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, indent=2, default=str)


def _collect_outputs(
    plan: ExecutionPlan,
    execution: ExecutionResult,
) -> tuple[list[StepOutput], list[StepError]]:
    """Per-step outputs and errors in the plan's original step order."""
    outputs: list[StepOutput] = []
    errors: list[StepError] = []
    for step in plan.steps:
        result = execution.results.get(step.id)
        if result is None:
            continue
        outputs.append(
            StepOutput(
                step_id=step.id,
                success=result.success,
                output=result.data,
                error=result.error,
            )
        )
        if not result.success and result.error:
            errors.append(StepError(step_id=step.id, error=result.error))
    return outputs, errors


def _build_summary(plan: ExecutionPlan, execution: ExecutionResult) -> AggregationSummary:
    return AggregationSummary(
        total_steps=len(plan.steps),
        success_count=len(execution.successful_steps),
        failure_count=len(execution.failed_steps),
        skipped_count=len(execution.skipped_steps),
        total_duration_ms=execution.total_duration_ms,
    )


def _describe(plan: ExecutionPlan, step_id: str) -> str:
    step = plan.get_step(step_id)
    return step.description if step and step.description else step_id


def format_failure_response(plan: ExecutionPlan, errors: list[StepError]) -> str:
    """Markdown report for a plan in which no step succeeded."""
    error_list = "\n".join(f"- **{e.step_id}**: {e.error}" for e in errors)
    return f"""## Task Failed

Unfortunately, the task "{plan.summary}" could not be completed.

### Errors Encountered
{error_list}

### Suggestions
- Check the error messages for specific issues
- Verify that all required resources are available
- Consider breaking down the task into smaller parts
- Retry individual steps that may have failed due to temporary issues"""


def format_simple_aggregation(
    plan: ExecutionPlan,
    execution: ExecutionResult,
    outputs: list[StepOutput],
) -> str:
    """Deterministic Markdown rendering of step outputs and errors."""
    sections: list[str] = [f"## {plan.summary}\n"]

    successful = [o for o in outputs if o.success]
    if successful:
        sections.append("### Results\n")
        for output in successful:
            sections.append(f"#### {_describe(plan, output.step_id)}")
            sections.append(truncate(_stringify(output.output), SIMPLE_OUTPUT_LIMIT))
            sections.append("")

    failed = [o for o in outputs if not o.success]
    if failed:
        sections.append("### Errors\n")
        for output in failed:
            sections.append(f"- **{output.step_id}**: {output.error}")
        sections.append("")

    sections.append("### Summary")
    sections.append(
        f"- {len(execution.successful_steps)} of {len(plan.steps)} steps completed successfully"
    )
    sections.append(f"- Total execution time: {execution.total_duration_ms}ms")
    return "\n".join(sections)


def quick_aggregate(plan: ExecutionPlan, execution: ExecutionResult) -> AggregationResult:
    """Aggregate without any provider call."""
    outputs, errors = _collect_outputs(plan, execution)
    summary = _build_summary(plan, execution)
    if summary.success_count == 0:
        response = format_failure_response(plan, errors)
    else:
        response = format_simple_aggregation(plan, execution, outputs)
    return AggregationResult(
        response=response,
        summary=summary,
        step_outputs=outputs,
        errors=errors,
    )


async def _synthesize(
    plan: ExecutionPlan,
    execution: ExecutionResult,
    outputs: list[StepOutput],
    llm_client: LLMClient,
    config: AggregatorConfig,
    actor_id: str | None,
    on_llm_call: Callable[[LLMMetrics], None] | None,
) -> str:
    result_sections = [
        f"### {_describe(plan, o.step_id)}\n"
        f"{truncate(_stringify(o.output), SYNTHESIS_OUTPUT_LIMIT)}"
        for o in outputs
        if o.success
    ]
    error_lines = [f"- {o.step_id}: {o.error}" for o in outputs if not o.success]
    prompt = build_aggregation_prompt(
        summary=plan.summary,
        result_sections=result_sections,
        error_lines=error_lines,
        total_steps=len(plan.steps),
        succeeded=len(execution.successful_steps),
        failed=len(execution.failed_steps),
        duration_ms=execution.total_duration_ms,
    )
    response = await llm_client.call(
        messages=[
            {"role": "system", "content": AGGREGATION_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        model=config.model,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        actor_id=actor_id,
    )
    if on_llm_call is not None:
        on_llm_call(response.metrics)
    if not response.content.strip():
        raise ValueError("Aggregation model returned an empty response")
    return response.content


async def aggregate_results(
    plan: ExecutionPlan,
    execution: ExecutionResult,
    llm_client: LLMClient | None,
    config: AggregatorConfig | None = None,
    actor_id: str | None = None,
    on_llm_call: Callable[[LLMMetrics], None] | None = None,
) -> AggregationResult:
    """Synthesize step outputs into one response.

    Args:
        plan: The executed plan.
        execution: Its execution result.
        llm_client: Synthesis provider; None forces the deterministic path.
        config: Model and token limit; defaults from settings.
        actor_id: Tags LLM metric events.
        on_llm_call: Receives the synthesis call's metrics.

    Returns:
        AggregationResult. Provider errors never escape; they fall back to
        ``quick_aggregate``.
    """
    config = config or AggregatorConfig.from_settings()
    start = time.time()
    logger.info(
        "aggregation_started",
        actor_id=actor_id,
        task_id=plan.task_id,
        success_count=len(execution.successful_steps),
        failure_count=len(execution.failed_steps),
    )

    fallback = quick_aggregate(plan, execution)
    if fallback.summary.success_count == 0 or llm_client is None:
        return fallback

    try:
        response = await _synthesize(
            plan,
            execution,
            fallback.step_outputs,
            llm_client,
            config,
            actor_id,
            on_llm_call,
        )
    except Exception as e:
        logger.error(
            "aggregation_synthesis_failed",
            actor_id=actor_id,
            task_id=plan.task_id,
            error=str(e),
        )
        return fallback

    logger.info(
        "aggregation_completed",
        actor_id=actor_id,
        task_id=plan.task_id,
        duration_ms=int((time.time() - start) * 1000),
    )
    return fallback.model_copy(update={"response": response})


def extract_key_findings(result: AggregationResult) -> list[str]:
    """Pull up to five short findings from successful step outputs.

    Text outputs contribute up to three bullet lines each. Structured outputs
    contribute up to three entries of a ``findings`` list plus a ``summary``.
    """
    findings: list[str] = []
    for output in result.step_outputs:
        if not output.success:
            continue
        if isinstance(output.output, str):
            bullets = _BULLET_RE.findall(output.output)
            findings.extend(bullet.strip() for bullet in bullets[:3])
        elif isinstance(output.output, dict):
            listed = output.output.get("findings")
            if isinstance(listed, list):
                findings.extend(str(item) for item in listed[:3])
            summary = output.output.get("summary")
            if isinstance(summary, str):
                findings.append(summary)
    return findings[:MAX_KEY_FINDINGS]
