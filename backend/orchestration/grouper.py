"""Dependency grouper: split a step graph into parallel execution levels.

A step's depth is 0 when it has no dependencies and otherwise one more than
the deepest step it depends on. Steps of equal depth form a level; every
step in level N only depends on steps in levels below N.
"""

import structlog

from orchestration.planner import topological_sort_steps
from orchestration.types import ExecutionPlan, PlanStep

logger = structlog.get_logger(__name__)


def calculate_dependency_depths(steps: list[PlanStep]) -> dict[str, int]:
    """Memoized depth per step id.

    Dependencies on unknown ids count as depth 0. Validated plans have no
    cycles; if one slips through, the back edge is ignored rather than
    recursing forever.
    """
    step_map = {step.id: step for step in steps}
    depths: dict[str, int] = {}
    in_progress: set[str] = set()

    def depth_of(step_id: str) -> int:
        if step_id in depths:
            return depths[step_id]
        step = step_map.get(step_id)
        if step is None or not step.depends_on:
            depths[step_id] = 0
            return 0
        in_progress.add(step_id)
        dep_depths = [
            depth_of(dep_id) for dep_id in step.depends_on if dep_id not in in_progress
        ]
        in_progress.discard(step_id)
        depth = (max(dep_depths) + 1) if dep_depths else 0
        depths[step_id] = depth
        return depth

    for step in steps:
        depth_of(step.id)
    return {step.id: depths[step.id] for step in steps}


def group_steps_by_level(steps: list[PlanStep]) -> list[list[PlanStep]]:
    """Group steps into ordered levels, highest priority first within a level.

    The priority sort is stable, so ties keep the plan's original order.
    """
    if not steps:
        return []

    depths = calculate_dependency_depths(steps)
    levels: list[list[PlanStep]] = [[] for _ in range(max(depths.values()) + 1)]
    for step in steps:
        levels[depths[step.id]].append(step)

    grouped = [
        sorted(level, key=lambda s: s.priority, reverse=True)
        for level in levels
        if level
    ]
    logger.debug(
        "steps_grouped",
        level_count=len(grouped),
        level_sizes=[len(level) for level in grouped],
    )
    return grouped


def optimize_plan(plan: ExecutionPlan) -> ExecutionPlan:
    """Return a copy with steps in dependency order and depth-adjusted priority.

    Priority becomes ``max(1, 10 - depth)`` so foundational steps win under
    contention. The input plan is not modified.
    """
    depths = calculate_dependency_depths(plan.steps)
    step_map = {step.id: step for step in plan.steps}
    optimized = [
        step_map[step_id].model_copy(update={"priority": max(1, 10 - depths[step_id])})
        for step_id in topological_sort_steps(plan.steps)
    ]
    return plan.model_copy(update={"steps": optimized})
