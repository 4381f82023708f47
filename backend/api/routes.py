"""HTTP API routes for the batching backend.

This module defines the HTTP endpoints for posting messages to actors,
inspecting their batch state, running the plan pipeline directly, and health
checks. Replies and progress are streamed over WebSocket in websocket.py.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, Body, HTTPException, Path, status

from models.schemas import (
    ActorStateResponse,
    BatchSnapshot,
    CreatePlanRequest,
    EnqueueMessageRequest,
    EnqueueMessageResponse,
    HealthResponse,
    PlanResponse,
    TimerFireRequest,
    TimerFireResponse,
    ValidatePlanRequest,
    ValidatePlanResponse,
)
from orchestration.aggregator import extract_key_findings
from orchestration.grouper import group_steps_by_level
from orchestration.planner import topological_sort_steps, validate_plan_dependencies

if TYPE_CHECKING:
    from batching.coordinator import BatchCoordinator
    from orchestration.graph import OrchestrationGraph
    from timers import TimerWorker

logger = structlog.get_logger(__name__)

router = APIRouter()

# Dependencies (set during application startup)
_coordinator: BatchCoordinator | None = None
_orchestration_graph: OrchestrationGraph | None = None
_timer_worker: TimerWorker | None = None


def set_coordinator(coordinator: BatchCoordinator) -> None:
    """Set the batch coordinator used by the actor routes.

    Args:
        coordinator: The BatchCoordinator instance to use for all routes.
    """
    global _coordinator
    _coordinator = coordinator
    logger.info("coordinator_configured")


def get_coordinator() -> BatchCoordinator:
    """Get the batch coordinator.

    Raises:
        RuntimeError: If the coordinator has not been configured.
    """
    if _coordinator is None:
        logger.error("coordinator_not_configured")
        raise RuntimeError("BatchCoordinator not configured. Call set_coordinator() during startup.")
    return _coordinator


def set_orchestration_graph(graph: OrchestrationGraph | None) -> None:
    global _orchestration_graph
    _orchestration_graph = graph


def set_timer_worker(worker: TimerWorker | None) -> None:
    global _timer_worker
    _timer_worker = worker


def _require_coordinator() -> BatchCoordinator:
    try:
        return get_coordinator()
    except RuntimeError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        ) from e


@router.post(
    "/api/actors/{actor_id}/messages",
    response_model=EnqueueMessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Post a message to an actor",
    description="Queue a message into the actor's pending batch. Duplicates are ignored.",
)
async def enqueue_message(
    actor_id: Annotated[str, Path(description="The actor ID", min_length=1)],
    request: EnqueueMessageRequest,
) -> EnqueueMessageResponse:
    """Queue a message and schedule its batch.

    The reply is delivered on the actor's WebSocket stream once the batch
    has been processed.

    Raises:
        HTTPException: If the coordinator is unavailable or queueing fails.
    """
    coordinator = _require_coordinator()
    ctx = request.model_dump()
    ctx["actor_id"] = actor_id

    try:
        result = await coordinator.enqueue(actor_id, ctx)
    except Exception as e:
        logger.error("enqueue_failed", actor_id=actor_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to queue message: {e}",
        ) from e

    return EnqueueMessageResponse(
        queued=result.queued,
        batch_id=result.batch_id,
        request_id=result.request_id,
    )


@router.post(
    "/api/actors/{actor_id}/timer",
    response_model=TimerFireResponse,
    summary="Fire an actor's batch timer",
    description="Run the timer handler for an actor immediately.",
)
async def fire_timer(
    actor_id: Annotated[str, Path(description="The actor ID", min_length=1)],
    request: Annotated[TimerFireRequest | None, Body()] = None,
) -> TimerFireResponse:
    coordinator = _require_coordinator()
    batch_id = request.batch_id if request is not None else None
    try:
        await coordinator.on_timer_fire(actor_id, batch_id)
    except Exception as e:
        logger.error("manual_timer_fire_failed", actor_id=actor_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Timer fire failed: {e}",
        ) from e
    return TimerFireResponse(actor_id=actor_id)


@router.get(
    "/api/actors/{actor_id}/state",
    response_model=ActorStateResponse,
    summary="Get actor state",
    description="Snapshot of the actor's active and pending batches.",
)
async def get_actor_state(
    actor_id: Annotated[str, Path(description="The actor ID", min_length=1)],
) -> ActorStateResponse:
    coordinator = _require_coordinator()
    state = await coordinator.get_state(actor_id)
    return ActorStateResponse(
        actor_id=state.actor_id,
        active=BatchSnapshot.from_batch(state.active) if state.active is not None else None,
        pending=BatchSnapshot.from_batch(state.pending),
        history_length=len(state.history),
        updated_at=state.updated_at,
    )


@router.post(
    "/api/plans",
    response_model=PlanResponse,
    response_model_by_alias=True,
    summary="Run the plan pipeline",
    description="Plan, validate, execute and aggregate a request in one call.",
)
async def run_plan(request: CreatePlanRequest) -> PlanResponse:
    """Run the full plan pipeline for an already-parsed request.

    Step and aggregation events are published to ``request.actor_id``.

    Raises:
        HTTPException: 503 when no pipeline is configured, 502 when the
            planning provider fails.
    """
    if _orchestration_graph is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestration is not configured",
        )

    try:
        final_state = await _orchestration_graph.run(
            request.task,
            request.actor_id,
            plan=request.plan,
        )
    except Exception as e:
        logger.error("plan_pipeline_failed", actor_id=request.actor_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Plan pipeline failed: {e}",
        ) from e

    aggregation = final_state.get("aggregation")
    plan = final_state["plan"]
    assert plan is not None
    return PlanResponse(
        plan=plan,
        response=final_state["response"],
        summary=aggregation.summary if aggregation is not None else None,
        levels=final_state.get("levels", []),
        validation_errors=final_state.get("validation_errors", []),
        key_findings=extract_key_findings(aggregation) if aggregation is not None else [],
    )


@router.post(
    "/api/plans/validate",
    response_model=ValidatePlanResponse,
    summary="Validate plan dependencies",
    description="Check a plan for dangling references, self-dependencies and cycles.",
)
async def validate_plan(request: ValidatePlanRequest) -> ValidatePlanResponse:
    result = validate_plan_dependencies(request.plan)
    if not result.valid:
        return ValidatePlanResponse(valid=False, errors=result.errors)
    return ValidatePlanResponse(
        valid=True,
        levels=[[step.id for step in level] for level in group_steps_by_level(request.plan.steps)],
        execution_order=topological_sort_steps(request.plan.steps),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with coordinator and timer worker status.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint with infrastructure status.

    Returns:
        HealthResponse; unhealthy until the coordinator is configured.
    """
    coordinator_ready = _coordinator is not None
    timer_worker_running = _timer_worker is not None and _timer_worker.running
    in_flight = _timer_worker.in_flight_count if _timer_worker is not None else 0

    return HealthResponse(
        status="healthy" if coordinator_ready else "unhealthy",
        timestamp=time.time(),
        coordinator_ready=coordinator_ready,
        timer_worker_running=timer_worker_running,
        in_flight_timers=in_flight,
    )
