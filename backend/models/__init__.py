"""Models module: API schemas and persistence stores.

This module exposes the request/response models used by the API.
"""

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

__all__ = [
    "ActorStateResponse",
    "BatchSnapshot",
    "CreatePlanRequest",
    "EnqueueMessageRequest",
    "EnqueueMessageResponse",
    "HealthResponse",
    "PlanResponse",
    "TimerFireRequest",
    "TimerFireResponse",
    "ValidatePlanRequest",
    "ValidatePlanResponse",
]
