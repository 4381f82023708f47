"""Tests for orchestration/planner.py -- parsing, salvage, validation, ordering."""

import json

import pytest

from llm.client import MockLLMClient
from orchestration.planner import (
    FALLBACK_STEP_ID,
    PlanningContext,
    create_plan,
    create_simple_plan,
    estimate_complexity,
    parse_plan_response,
    salvage_plan,
    topological_sort_steps,
    validate_plan_dependencies,
)
from orchestration.types import Complexity, ExpectedOutput, PlannerConfig, WorkerType
from tests.conftest import make_llm_response, make_plan, make_step

VALID_PLAN = {
    "taskId": "task_abc",
    "summary": "Research and summarize",
    "steps": [
        {
            "id": "step_1",
            "description": "Research",
            "workerType": "research",
            "task": "Find sources",
            "dependsOn": [],
            "priority": 8,
            "expectedOutput": "data",
        },
        {
            "id": "step_2",
            "description": "Summarize",
            "workerType": "general",
            "task": "Write the summary",
            "dependsOn": ["step_1"],
            "priority": 5,
            "expectedOutput": "text",
        },
    ],
    "estimatedComplexity": "low",
    "estimatedDurationSeconds": 20,
}


class TestSimplePlan:
    def test_single_general_step(self) -> None:
        plan = create_simple_plan("Write a haiku about the sea")
        assert len(plan.steps) == 1
        step = plan.steps[0]
        assert step.id == FALLBACK_STEP_ID
        assert step.worker_type == WorkerType.GENERAL
        assert step.task == "Write a haiku about the sea"
        assert step.depends_on == []
        assert plan.task_id.startswith("task_")
        assert plan.estimated_complexity == Complexity.LOW

    @pytest.mark.parametrize(
        ("count", "expected"),
        [
            (1, Complexity.LOW),
            (2, Complexity.LOW),
            (3, Complexity.MEDIUM),
            (5, Complexity.MEDIUM),
            (6, Complexity.HIGH),
        ],
    )
    def test_estimate_complexity(self, count: int, expected: Complexity) -> None:
        assert estimate_complexity(count) == expected


class TestParsePlanResponse:
    def test_valid_json_plan(self) -> None:
        plan = parse_plan_response(json.dumps(VALID_PLAN), "task")
        assert plan.task_id == "task_abc"
        assert [s.id for s in plan.steps] == ["step_1", "step_2"]
        assert plan.steps[0].worker_type == WorkerType.RESEARCH
        assert plan.steps[1].depends_on == ["step_1"]

    def test_plan_inside_prose_and_fence(self) -> None:
        content = f"Here is the plan:\n```json\n{json.dumps(VALID_PLAN)}\n```\nGood luck!"
        plan = parse_plan_response(content, "task")
        assert plan.task_id == "task_abc"

    def test_unparseable_response_falls_back(self) -> None:
        plan = parse_plan_response("I cannot plan this.", "do the thing")
        assert [s.id for s in plan.steps] == [FALLBACK_STEP_ID]
        assert plan.steps[0].task == "do the thing"

    def test_partial_plan_is_salvaged(self) -> None:
        content = json.dumps(
            {
                "summary": "Partial",
                "steps": [
                    {"description": "First", "workerType": "wizard", "priority": 42},
                    {"id": "b", "task": "Second", "dependsOn": ["step_1"], "expectedOutput": "??"},
                ],
            }
        )
        plan = parse_plan_response(content, "original")
        first, second = plan.steps
        assert first.id == "step_1"
        assert first.worker_type == WorkerType.GENERAL
        assert first.priority == 10
        assert first.task == "original"
        assert second.description == "Execute step"
        assert second.expected_output == ExpectedOutput.TEXT
        assert second.depends_on == ["step_1"]


class TestSalvage:
    def test_no_usable_steps_yields_simple_plan(self) -> None:
        plan = salvage_plan({"steps": ["not a dict"]}, "original")
        assert [s.id for s in plan.steps] == [FALLBACK_STEP_ID]

    def test_respects_max_steps(self) -> None:
        raw = {"steps": [{"task": f"t{i}"} for i in range(8)]}
        plan = salvage_plan(raw, "original", max_steps=3)
        assert len(plan.steps) == 3
        assert plan.estimated_duration_seconds == 30

    def test_low_priority_clamped(self) -> None:
        plan = salvage_plan({"steps": [{"task": "t", "priority": -4}]}, "original")
        assert plan.steps[0].priority == 1


class TestValidation:
    def test_valid_plan(self) -> None:
        plan = make_plan(make_step("a"), make_step("b", ["a"]))
        result = validate_plan_dependencies(plan)
        assert result.valid
        assert result.errors == []

    def test_missing_dependency(self) -> None:
        plan = make_plan(make_step("a", ["ghost"]))
        result = validate_plan_dependencies(plan)
        assert not result.valid
        assert result.errors == ['Step "a" depends on non-existent step "ghost"']

    def test_self_dependency_reported_once(self) -> None:
        plan = make_plan(make_step("a", ["a"]))
        result = validate_plan_dependencies(plan)
        assert result.errors == ['Step "a" cannot depend on itself']

    def test_cycle_detected(self) -> None:
        plan = make_plan(make_step("a", ["c"]), make_step("b", ["a"]), make_step("c", ["b"]))
        result = validate_plan_dependencies(plan)
        assert result.errors == ["Plan contains circular dependencies"]

    def test_each_dangling_reference_reported(self) -> None:
        plan = make_plan(make_step("a", ["x", "y"]))
        assert len(validate_plan_dependencies(plan).errors) == 2

    def test_duplicate_ids(self) -> None:
        plan = make_plan(make_step("a"), make_step("a"))
        assert 'Duplicate step id "a"' in validate_plan_dependencies(plan).errors


class TestTopologicalSort:
    def test_dependencies_come_first(self) -> None:
        steps = [make_step("c", ["b"]), make_step("b", ["a"]), make_step("a")]
        assert topological_sort_steps(steps) == ["a", "b", "c"]

    def test_unknown_dependencies_ignored(self) -> None:
        steps = [make_step("a", ["ghost"]), make_step("b")]
        assert topological_sort_steps(steps) == ["a", "b"]

    def test_diamond(self) -> None:
        steps = [
            make_step("d", ["b", "c"]),
            make_step("b", ["a"]),
            make_step("c", ["a"]),
            make_step("a"),
        ]
        order = topological_sort_steps(steps)
        assert order.index("a") < order.index("b") < order.index("d")
        assert order.index("c") < order.index("d")


class TestCreatePlan:
    async def test_returns_parsed_plan(self) -> None:
        llm = MockLLMClient(responses=[make_llm_response(json.dumps(VALID_PLAN))])
        recorded = []

        plan = await create_plan(
            "Research X",
            llm,
            PlannerConfig(max_steps=10),
            context=PlanningContext(platform="telegram", available_workers=["general"]),
            actor_id="chat_1",
            on_llm_call=recorded.append,
        )

        assert plan.task_id == "task_abc"
        assert len(recorded) == 1
        call = llm.call_history[0]
        assert call["actor_id"] == "chat_1"
        user_prompt = call["messages"][1]["content"]
        assert "## Task\nResearch X" in user_prompt
        assert "Platform: telegram" in user_prompt
        assert "Maximum 10 steps" in user_prompt

    async def test_invalid_graph_uses_fallback(self) -> None:
        cyclic = {
            "taskId": "task_cycle",
            "summary": "Cycle",
            "steps": [
                {"id": "a", "description": "A", "task": "A", "dependsOn": ["b"]},
                {"id": "b", "description": "B", "task": "B", "dependsOn": ["a"]},
            ],
        }
        llm = MockLLMClient(responses=[make_llm_response(json.dumps(cyclic))])

        plan = await create_plan("Do it", llm, PlannerConfig())

        assert [s.id for s in plan.steps] == [FALLBACK_STEP_ID]

    async def test_invalid_graph_kept_when_caller_validates(self) -> None:
        cyclic = {
            "taskId": "task_cycle",
            "summary": "Cycle",
            "steps": [
                {"id": "a", "description": "A", "task": "A", "dependsOn": ["b"]},
                {"id": "b", "description": "B", "task": "B", "dependsOn": ["a"]},
            ],
        }
        llm = MockLLMClient(responses=[make_llm_response(json.dumps(cyclic))])

        plan = await create_plan("Do it", llm, PlannerConfig(), fallback_on_invalid=False)

        assert [s.id for s in plan.steps] == ["a", "b"]

    async def test_truncates_to_max_steps(self) -> None:
        many = {
            "taskId": "task_many",
            "summary": "Many",
            "steps": [
                {"id": f"s{i}", "description": "d", "task": "t"} for i in range(6)
            ],
        }
        llm = MockLLMClient(responses=[make_llm_response(json.dumps(many))])

        plan = await create_plan("Do it", llm, PlannerConfig(max_steps=4))

        assert len(plan.steps) == 4

    async def test_provider_error_propagates(self) -> None:
        llm = MockLLMClient(responses=[RuntimeError("rate limited")])
        with pytest.raises(RuntimeError, match="rate limited"):
            await create_plan("Do it", llm, PlannerConfig())
