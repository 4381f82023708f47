"""Tests for orchestration/executor.py -- level-ordered parallel execution."""

import asyncio

import pytest

from orchestration.executor import EARLIER_FAILURE_ERROR, execute_plan
from orchestration.planner import PlanValidationError
from orchestration.types import (
    ExecutorConfig,
    StepStatus,
    WorkerInput,
    WorkerResult,
)
from orchestration.workers import create_mock_dispatcher
from tests.conftest import make_plan, make_step


class ProgressRecorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, StepStatus]] = []

    async def __call__(
        self, step_id: str, status: StepStatus, result: WorkerResult | None
    ) -> None:
        self.events.append((step_id, status))

    def statuses(self, step_id: str) -> list[StepStatus]:
        return [status for sid, status in self.events if sid == step_id]


class TestExecutePlan:
    async def test_all_steps_succeed(self) -> None:
        plan = make_plan(make_step("a"), make_step("b"), make_step("c", ["a", "b"]))
        progress = ProgressRecorder()

        result = await execute_plan(
            plan, create_mock_dispatcher(), ExecutorConfig(), on_progress=progress
        )

        assert result.all_succeeded
        assert set(result.successful_steps) == {"a", "b", "c"}
        assert result.successful_steps[-1] == "c"
        assert progress.statuses("c") == [StepStatus.STARTED, StepStatus.COMPLETED]

    async def test_dependency_results_are_forwarded(self) -> None:
        seen: dict[str, WorkerInput] = {}

        async def dispatcher(worker_type: str, worker_input: WorkerInput) -> WorkerResult:
            seen[worker_input.step.id] = worker_input
            return WorkerResult(
                step_id=worker_input.step.id,
                success=True,
                data=f"out-{worker_input.step.id}",
            )

        plan = make_plan(make_step("a"), make_step("b", ["a"], worker_type="research"))
        await execute_plan(
            plan,
            dispatcher,
            ExecutorConfig(),
            context={"actor_id": "chat_1"},
            trace_id="trace_1",
        )

        b_input = seen["b"]
        assert b_input.dependency_results["a"].data == "out-a"
        assert b_input.context == {"actor_id": "chat_1"}
        assert b_input.trace_id == "trace_1"
        assert seen["a"].dependency_results == {}

    async def test_failed_dependency_skips_dependents(self) -> None:
        dispatcher = create_mock_dispatcher(
            {"a": WorkerResult(step_id="a", success=False, error="boom")}
        )
        plan = make_plan(
            make_step("a"),
            make_step("b"),
            make_step("c", ["a"]),
            make_step("d", ["b"]),
            make_step("e", ["c"]),
        )
        progress = ProgressRecorder()

        result = await execute_plan(
            plan,
            dispatcher,
            ExecutorConfig(continue_on_error=True),
            on_progress=progress,
        )

        assert result.failed_steps == ["a"]
        assert set(result.successful_steps) == {"b", "d"}
        assert result.skipped_steps == ["c", "e"]
        assert result.results["c"].error == "Skipped due to failed dependencies: a"
        assert result.results["e"].error == "Skipped due to failed dependencies: c"
        assert progress.statuses("e") == [StepStatus.SKIPPED]

    async def test_failure_halts_later_levels_by_default(self) -> None:
        dispatcher = create_mock_dispatcher(
            {"a": WorkerResult(step_id="a", success=False, error="boom")}
        )
        plan = make_plan(make_step("a"), make_step("b"), make_step("c", ["b"]))

        result = await execute_plan(plan, dispatcher, ExecutorConfig(continue_on_error=False))

        assert result.failed_steps == ["a"]
        assert result.successful_steps == ["b"]
        assert result.skipped_steps == ["c"]
        assert result.results["c"].error == EARLIER_FAILURE_ERROR
        assert not result.all_succeeded

    async def test_dispatcher_exception_becomes_failure(self) -> None:
        async def dispatcher(worker_type: str, worker_input: WorkerInput) -> WorkerResult:
            raise ConnectionError("worker unreachable")

        plan = make_plan(make_step("a"))
        result = await execute_plan(plan, dispatcher, ExecutorConfig())

        assert result.failed_steps == ["a"]
        assert result.results["a"].error == "worker unreachable"

    async def test_result_step_id_is_normalized(self) -> None:
        async def dispatcher(worker_type: str, worker_input: WorkerInput) -> WorkerResult:
            return WorkerResult(step_id="wrong", success=True, data="x")

        result = await execute_plan(make_plan(make_step("a")), dispatcher, ExecutorConfig())

        assert result.results["a"].step_id == "a"

    async def test_invalid_plan_rejected(self) -> None:
        plan = make_plan(make_step("a", ["ghost"]))
        with pytest.raises(PlanValidationError) as exc_info:
            await execute_plan(plan, create_mock_dispatcher(), ExecutorConfig())
        assert exc_info.value.errors == ['Step "a" depends on non-existent step "ghost"']

    async def test_parallelism_is_bounded(self) -> None:
        running = 0
        peak = 0

        async def dispatcher(worker_type: str, worker_input: WorkerInput) -> WorkerResult:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return WorkerResult(step_id=worker_input.step.id, success=True)

        plan = make_plan(*[make_step(f"s{i}") for i in range(6)])
        result = await execute_plan(plan, dispatcher, ExecutorConfig(max_parallel=2))

        assert len(result.successful_steps) == 6
        assert peak == 2

    async def test_progress_callback_errors_are_ignored(self) -> None:
        async def broken_progress(step_id, status, result) -> None:
            raise RuntimeError("subscriber gone")

        result = await execute_plan(
            make_plan(make_step("a")),
            create_mock_dispatcher(),
            ExecutorConfig(),
            on_progress=broken_progress,
        )
        assert result.all_succeeded

    async def test_to_dict_uses_camel_case(self) -> None:
        result = await execute_plan(
            make_plan(make_step("a")), create_mock_dispatcher(), ExecutorConfig()
        )
        payload = result.to_dict()
        assert payload["successfulSteps"] == ["a"]
        assert payload["allSucceeded"] is True
        assert payload["results"]["a"]["stepId"] == "a"
