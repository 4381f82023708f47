"""Tests for orchestration/grouper.py."""

from orchestration.grouper import (
    calculate_dependency_depths,
    group_steps_by_level,
    optimize_plan,
)
from tests.conftest import make_plan, make_step


def _ids(levels) -> list[list[str]]:
    return [[step.id for step in level] for level in levels]


class TestDependencyDepths:
    def test_chain(self) -> None:
        steps = [make_step("a"), make_step("b", ["a"]), make_step("c", ["b"])]
        assert calculate_dependency_depths(steps) == {"a": 0, "b": 1, "c": 2}

    def test_depth_follows_deepest_dependency(self) -> None:
        steps = [
            make_step("a"),
            make_step("b", ["a"]),
            make_step("c", ["a", "b"]),
        ]
        assert calculate_dependency_depths(steps)["c"] == 2

    def test_unknown_dependency_has_depth_zero(self) -> None:
        assert calculate_dependency_depths([make_step("a", ["ghost"])]) == {"a": 1}

    def test_cycle_does_not_recurse_forever(self) -> None:
        steps = [make_step("a", ["b"]), make_step("b", ["a"])]
        depths = calculate_dependency_depths(steps)
        assert set(depths) == {"a", "b"}


class TestGroupByLevel:
    def test_empty(self) -> None:
        assert group_steps_by_level([]) == []

    def test_independent_steps_share_a_level(self) -> None:
        steps = [make_step("a"), make_step("b"), make_step("c", ["a", "b"])]
        assert _ids(group_steps_by_level(steps)) == [["a", "b"], ["c"]]

    def test_priority_orders_within_level(self) -> None:
        steps = [
            make_step("low", priority=2),
            make_step("high", priority=9),
            make_step("mid", priority=5),
        ]
        assert _ids(group_steps_by_level(steps)) == [["high", "mid", "low"]]

    def test_equal_priority_keeps_plan_order(self) -> None:
        steps = [make_step("x"), make_step("y"), make_step("z")]
        assert _ids(group_steps_by_level(steps)) == [["x", "y", "z"]]

    def test_every_dependency_is_in_an_earlier_level(self) -> None:
        steps = [
            make_step("d", ["b", "c"]),
            make_step("b", ["a"]),
            make_step("c", ["a"]),
            make_step("a"),
            make_step("e"),
        ]
        levels = _ids(group_steps_by_level(steps))
        position = {sid: i for i, level in enumerate(levels) for sid in level}
        for step in steps:
            for dep in step.depends_on:
                assert position[dep] < position[step.id]
        assert levels[0] == ["a", "e"]


class TestOptimizePlan:
    def test_priority_from_depth_and_dependency_order(self) -> None:
        plan = make_plan(
            make_step("c", ["b"], priority=1),
            make_step("b", ["a"], priority=1),
            make_step("a", priority=1),
        )

        optimized = optimize_plan(plan)

        assert [s.id for s in optimized.steps] == ["a", "b", "c"]
        assert [s.priority for s in optimized.steps] == [10, 9, 8]
        # Input untouched
        assert [s.priority for s in plan.steps] == [1, 1, 1]

    def test_priority_never_below_one(self) -> None:
        steps = [make_step("s0")]
        for i in range(1, 12):
            steps.append(make_step(f"s{i}", [f"s{i - 1}"]))
        optimized = optimize_plan(make_plan(*steps))
        assert optimized.steps[-1].priority == 1
