"""Tests for orchestration/aggregator.py."""

from llm.client import MockLLMClient
from orchestration.aggregator import (
    aggregate_results,
    extract_key_findings,
    quick_aggregate,
)
from orchestration.types import (
    AggregationResult,
    AggregationSummary,
    AggregatorConfig,
    ExecutionResult,
    StepOutput,
    WorkerResult,
)
from tests.conftest import make_llm_response, make_plan, make_step


def _execution(**outcomes: tuple[bool, object]) -> ExecutionResult:
    """Build an ExecutionResult from ``step_id=(success, data_or_error)``."""
    result = ExecutionResult(total_duration_ms=42)
    for step_id, (success, payload) in outcomes.items():
        if success:
            result.results[step_id] = WorkerResult(step_id=step_id, success=True, data=payload)
            result.successful_steps.append(step_id)
        else:
            result.results[step_id] = WorkerResult(
                step_id=step_id, success=False, error=str(payload)
            )
            result.failed_steps.append(step_id)
    return result


PLAN = make_plan(
    make_step("a", description="Collect data"),
    make_step("b", ["a"], description="Analyse data"),
    summary="Data report",
)


class TestQuickAggregate:
    def test_renders_results_errors_and_summary(self) -> None:
        execution = _execution(a=(True, "raw numbers"), b=(False, "division by zero"))

        result = quick_aggregate(PLAN, execution)

        assert result.response.startswith("## Data report")
        assert "#### Collect data\nraw numbers" in result.response
        assert "- **b**: division by zero" in result.response
        assert "- 1 of 2 steps completed successfully" in result.response
        assert "- Total execution time: 42ms" in result.response
        assert result.summary.success_count == 1
        assert result.summary.failure_count == 1
        assert [e.step_id for e in result.errors] == ["b"]

    def test_structured_output_rendered_as_json(self) -> None:
        result = quick_aggregate(PLAN, _execution(a=(True, {"rows": 3})))
        assert '"rows": 3' in result.response

    def test_long_output_truncated(self) -> None:
        result = quick_aggregate(PLAN, _execution(a=(True, "x" * 1500)))
        assert "x" * 1000 + "..." in result.response
        assert "x" * 1001 not in result.response

    def test_no_success_gives_failure_report(self) -> None:
        execution = _execution(a=(False, "timeout"), b=(False, "skipped"))

        result = quick_aggregate(PLAN, execution)

        assert result.response.startswith("## Task Failed")
        assert 'the task "Data report" could not be completed' in result.response
        assert "- **a**: timeout" in result.response
        assert "### Suggestions" in result.response

    def test_outputs_follow_plan_order(self) -> None:
        execution = ExecutionResult()
        for step_id in ("b", "a"):
            execution.results[step_id] = WorkerResult(step_id=step_id, success=True, data=step_id)
            execution.successful_steps.append(step_id)
        result = quick_aggregate(PLAN, execution)
        assert [o.step_id for o in result.step_outputs] == ["a", "b"]


class TestAggregateResults:
    async def test_synthesized_response(self) -> None:
        llm = MockLLMClient(responses=[make_llm_response("Unified answer")])
        recorded = []

        result = await aggregate_results(
            PLAN,
            _execution(a=(True, "numbers"), b=(True, "trend is up")),
            llm,
            AggregatorConfig(),
            actor_id="chat_1",
            on_llm_call=recorded.append,
        )

        assert result.response == "Unified answer"
        assert result.summary.success_count == 2
        assert len(recorded) == 1
        prompt = llm.call_history[0]["messages"][1]["content"]
        assert "## Original Task\nData report" in prompt
        assert "### Analyse data\ntrend is up" in prompt

    async def test_provider_error_falls_back(self) -> None:
        llm = MockLLMClient(responses=[RuntimeError("provider down")])
        execution = _execution(a=(True, "numbers"))

        result = await aggregate_results(PLAN, execution, llm, AggregatorConfig())

        assert result == quick_aggregate(PLAN, execution)

    async def test_missing_provider_matches_quick_aggregate(self) -> None:
        execution = _execution(a=(True, "numbers"), b=(False, "division by zero"))

        result = await aggregate_results(PLAN, execution, None, AggregatorConfig())

        expected = quick_aggregate(PLAN, execution)
        assert result == expected
        assert result.errors == expected.errors
        assert result.summary == expected.summary

    async def test_synthesis_only_replaces_response(self) -> None:
        llm = MockLLMClient(responses=[make_llm_response("Unified answer")])
        execution = _execution(a=(True, "numbers"), b=(False, "division by zero"))

        result = await aggregate_results(PLAN, execution, llm, AggregatorConfig())

        expected = quick_aggregate(PLAN, execution)
        assert result.response == "Unified answer"
        assert result.model_copy(update={"response": expected.response}) == expected

    async def test_empty_synthesis_falls_back(self) -> None:
        llm = MockLLMClient(responses=[make_llm_response("   ")])
        result = await aggregate_results(
            PLAN, _execution(a=(True, "numbers")), llm, AggregatorConfig()
        )
        assert result.response.startswith("## Data report")

    async def test_no_success_skips_provider(self) -> None:
        llm = MockLLMClient(responses=[make_llm_response("should not be used")])

        result = await aggregate_results(
            PLAN, _execution(a=(False, "boom")), llm, AggregatorConfig()
        )

        assert result.response.startswith("## Task Failed")
        assert llm.call_history == []

    async def test_without_client_uses_quick_path(self) -> None:
        result = await aggregate_results(
            PLAN, _execution(a=(True, "numbers")), None, AggregatorConfig()
        )
        assert "#### Collect data" in result.response


class TestKeyFindings:
    def _result(self, *outputs: StepOutput) -> AggregationResult:
        return AggregationResult(
            response="",
            summary=AggregationSummary(
                total_steps=len(outputs),
                success_count=len(outputs),
                failure_count=0,
                skipped_count=0,
                total_duration_ms=0,
            ),
            step_outputs=list(outputs),
        )

    def test_bullets_from_text_outputs(self) -> None:
        text = "Intro\n- one\n- two\n* three\n• four"
        findings = extract_key_findings(
            self._result(StepOutput(step_id="a", success=True, output=text))
        )
        assert findings == ["one", "two", "three"]

    def test_structured_findings_and_summary(self) -> None:
        output = {"findings": ["f1", "f2", "f3", "f4"], "summary": "overall"}
        findings = extract_key_findings(
            self._result(StepOutput(step_id="a", success=True, output=output))
        )
        assert findings == ["f1", "f2", "f3", "overall"]

    def test_capped_at_five_and_skips_failures(self) -> None:
        findings = extract_key_findings(
            self._result(
                StepOutput(step_id="a", success=True, output="- a1\n- a2\n- a3"),
                StepOutput(step_id="x", success=False, output="- nope"),
                StepOutput(step_id="b", success=True, output="- b1\n- b2\n- b3"),
            )
        )
        assert findings == ["a1", "a2", "a3", "b1", "b2"]
