"""Plan pipeline as a LangGraph StateGraph.

Graph structure:
    START -> plan -> validate --(valid)--> group -> execute -> aggregate -> END
                         |                   ^
                         +--(invalid)-> fallback

Events emitted:
- PLAN_CREATED: After the plan node, with the plan
- PLAN_INVALID: When validation fails and the single-step plan is substituted
- STEP_STARTED, STEP_COMPLETE, STEP_FAILED, STEP_SKIPPED: From executor progress
- AGGREGATION_STARTED, AGGREGATION_COMPLETE: Around result synthesis
"""

import operator
from typing import Annotated, Any, Literal, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from config import settings
from events.bus import EventBus
from events.types import ActorEvent, EventType, LLMMetrics
from llm.client import LLMClient
from orchestration.aggregator import aggregate_results
from orchestration.executor import execute_plan
from orchestration.grouper import group_steps_by_level
from orchestration.planner import (
    PlanningContext,
    create_plan,
    create_simple_plan,
    validate_plan_dependencies,
)
from orchestration.types import (
    AggregationResult,
    AggregatorConfig,
    ExecutionPlan,
    ExecutionResult,
    ExecutorConfig,
    PlannerConfig,
    StepStatus,
    WorkerDispatcher,
    WorkerResult,
)
from orchestration.workers import create_default_registry, create_worker_dispatcher

logger = structlog.get_logger(__name__)

_STEP_EVENTS: dict[StepStatus, EventType] = {
    StepStatus.STARTED: EventType.STEP_STARTED,
    StepStatus.COMPLETED: EventType.STEP_COMPLETE,
    StepStatus.FAILED: EventType.STEP_FAILED,
    StepStatus.SKIPPED: EventType.STEP_SKIPPED,
}


class OrchestrationState(TypedDict):
    """State flowing through the plan pipeline.

    Attributes:
        request: The user's task text.
        actor_id: Owning actor, for events and metrics.
        batch_id: Batch being processed, if any.
        plan: Current plan; may be supplied up front to skip planning.
        validation_errors: Errors from the validate node.
        levels: Step ids per dependency level.
        execution: Executor output.
        aggregation: Aggregator output.
        response: Final text.
        status: Current pipeline stage.
        llm_metrics: Metrics of every LLM call made by the pipeline.
    """

    request: str
    actor_id: str
    batch_id: str | None
    plan: ExecutionPlan | None
    validation_errors: list[str]
    levels: list[list[str]]
    execution: ExecutionResult | None
    aggregation: AggregationResult | None
    response: str
    status: Literal["planning", "validating", "executing", "aggregating", "complete"]
    llm_metrics: Annotated[list[LLMMetrics], operator.add]


def create_orchestration_initial_state(
    request: str,
    actor_id: str,
    batch_id: str | None = None,
    plan: ExecutionPlan | None = None,
) -> OrchestrationState:
    """Create the initial state for a pipeline run."""
    return OrchestrationState(
        request=request,
        actor_id=actor_id,
        batch_id=batch_id,
        plan=plan,
        validation_errors=[],
        levels=[],
        execution=None,
        aggregation=None,
        response="",
        status="planning",
        llm_metrics=[],
    )


class OrchestrationGraph:
    """Plan, validate, group, execute and aggregate one request.

    Usage:
        >>> graph = OrchestrationGraph(llm_client, event_bus)
        >>> final_state = await graph.run("Research X and then summarize it", "chat_42")
        >>> final_state["response"]
    """

    def __init__(
        self,
        llm_client: LLMClient,
        event_bus: EventBus | None = None,
        dispatcher: WorkerDispatcher | None = None,
        planner_config: PlannerConfig | None = None,
        executor_config: ExecutorConfig | None = None,
        aggregator_config: AggregatorConfig | None = None,
        planning_context: PlanningContext | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.event_bus = event_bus
        self.dispatcher = dispatcher or create_worker_dispatcher(
            create_default_registry(llm_client, model=settings.default_model),
            timeout_seconds=settings.worker_step_timeout_seconds,
        )
        self.planner_config = planner_config or PlannerConfig.from_settings()
        self.executor_config = executor_config or ExecutorConfig.from_settings()
        self.aggregator_config = aggregator_config or AggregatorConfig.from_settings()
        self.planning_context = planning_context
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        graph = StateGraph(OrchestrationState)

        graph.add_node("plan", self._plan)
        graph.add_node("validate", self._validate)
        graph.add_node("fallback", self._fallback)
        graph.add_node("group", self._group)
        graph.add_node("execute", self._execute)
        graph.add_node("aggregate", self._aggregate)

        graph.add_edge(START, "plan")
        graph.add_edge("plan", "validate")
        graph.add_conditional_edges(
            "validate",
            self._route_after_validate,
            {
                "group": "group",
                "fallback": "fallback",
            },
        )
        graph.add_edge("fallback", "group")
        graph.add_edge("group", "execute")
        graph.add_edge("execute", "aggregate")
        graph.add_edge("aggregate", END)

        return graph.compile()

    async def _emit(
        self,
        state: OrchestrationState,
        event_type: EventType,
        data: dict[str, Any],
    ) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            ActorEvent(
                type=event_type,
                actor_id=state["actor_id"],
                batch_id=state.get("batch_id"),
                data=data,
            )
        )

    async def _plan(self, state: OrchestrationState) -> dict[str, Any]:
        """Plan node: ask the planner unless a plan was supplied."""
        metrics: list[LLMMetrics] = []
        plan = state.get("plan")
        if plan is None:
            plan = await create_plan(
                state["request"],
                self.llm_client,
                self.planner_config,
                context=self.planning_context,
                actor_id=state["actor_id"],
                on_llm_call=metrics.append,
                fallback_on_invalid=False,
            )

        await self._emit(
            state,
            EventType.PLAN_CREATED,
            {"plan": plan.model_dump(by_alias=True, mode="json")},
        )
        return {"plan": plan, "status": "validating", "llm_metrics": metrics}

    async def _validate(self, state: OrchestrationState) -> dict[str, Any]:
        """Validate node: check references and cycles."""
        plan = state["plan"]
        assert plan is not None
        result = validate_plan_dependencies(plan)
        if not result.valid:
            logger.warning(
                "orchestration_plan_invalid",
                actor_id=state["actor_id"],
                task_id=plan.task_id,
                errors=result.errors,
            )
            await self._emit(state, EventType.PLAN_INVALID, {"errors": result.errors})
        return {"validation_errors": result.errors}

    def _route_after_validate(self, state: OrchestrationState) -> Literal["group", "fallback"]:
        return "fallback" if state.get("validation_errors") else "group"

    async def _fallback(self, state: OrchestrationState) -> dict[str, Any]:
        """Fallback node: replace an invalid plan with the single-step plan."""
        return {"plan": create_simple_plan(state["request"])}

    async def _group(self, state: OrchestrationState) -> dict[str, Any]:
        plan = state["plan"]
        assert plan is not None
        levels = [[step.id for step in level] for level in group_steps_by_level(plan.steps)]
        return {"levels": levels, "status": "executing"}

    async def _execute(self, state: OrchestrationState) -> dict[str, Any]:
        """Execute node: run the plan level by level, emitting step events."""
        plan = state["plan"]
        assert plan is not None
        metrics: list[LLMMetrics] = []

        async def on_progress(
            step_id: str,
            status: StepStatus,
            result: WorkerResult | None,
        ) -> None:
            step = plan.get_step(step_id)
            data: dict[str, Any] = {
                "step_id": step_id,
                "worker_type": str(step.worker_type) if step else None,
            }
            if result is not None:
                data["duration_ms"] = result.duration_ms
                if result.error:
                    data["error"] = result.error
            await self._emit(state, _STEP_EVENTS[status], data)

        execution = await execute_plan(
            plan,
            self.dispatcher,
            self.executor_config,
            context={"actor_id": state["actor_id"], "llm_metrics": metrics},
            on_progress=on_progress,
        )
        return {"execution": execution, "status": "aggregating", "llm_metrics": metrics}

    async def _aggregate(self, state: OrchestrationState) -> dict[str, Any]:
        """Aggregate node: synthesize, falling back to deterministic output."""
        plan = state["plan"]
        execution = state["execution"]
        assert plan is not None and execution is not None
        metrics: list[LLMMetrics] = []

        await self._emit(
            state,
            EventType.AGGREGATION_STARTED,
            {"success_count": len(execution.successful_steps)},
        )
        aggregation = await aggregate_results(
            plan,
            execution,
            self.llm_client,
            self.aggregator_config,
            actor_id=state["actor_id"],
            on_llm_call=metrics.append,
        )
        await self._emit(
            state,
            EventType.AGGREGATION_COMPLETE,
            {"summary": aggregation.summary.model_dump(by_alias=True)},
        )
        return {
            "aggregation": aggregation,
            "response": aggregation.response,
            "status": "complete",
            "llm_metrics": metrics,
        }

    async def run(
        self,
        request: str,
        actor_id: str,
        batch_id: str | None = None,
        plan: ExecutionPlan | None = None,
    ) -> OrchestrationState:
        """Run the pipeline to completion and return the final state."""
        initial_state = create_orchestration_initial_state(request, actor_id, batch_id, plan)
        logger.info(
            "orchestration_started",
            actor_id=actor_id,
            batch_id=batch_id,
            plan_supplied=plan is not None,
        )
        final_state: OrchestrationState = await self._compiled_graph.ainvoke(initial_state)
        logger.info(
            "orchestration_completed",
            actor_id=actor_id,
            batch_id=batch_id,
            response_length=len(final_state["response"]),
        )
        return final_state


def create_orchestration_graph(
    llm_client: LLMClient,
    event_bus: EventBus | None = None,
    dispatcher: WorkerDispatcher | None = None,
) -> OrchestrationGraph:
    """Factory for the default pipeline configured from settings."""
    return OrchestrationGraph(llm_client, event_bus=event_bus, dispatcher=dispatcher)
