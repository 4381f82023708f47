"""Worker registry and dispatchers.

Workers are resolved by their ``worker_type`` string at dispatch time. The
registry raises ``UnknownWorkerTypeError`` for an unregistered type; the
dispatcher built on top of it turns that into a failed ``WorkerResult`` so
one bad step never aborts the plan.
"""

import asyncio
from typing import Protocol

import structlog

from llm.client import LLMClient
from orchestration.prompts import WORKER_PROMPTS, build_worker_prompt
from orchestration.types import WorkerDispatcher, WorkerInput, WorkerResult, WorkerType

logger = structlog.get_logger(__name__)


class UnknownWorkerTypeError(LookupError):
    """Raised when no worker is registered for a worker type."""

    def __init__(self, worker_type: str) -> None:
        self.worker_type = worker_type
        super().__init__(f"No worker available for type: {worker_type}")


class Worker(Protocol):
    """A handler for one worker type."""

    async def run(self, worker_input: WorkerInput) -> WorkerResult: ...


class WorkerRegistry:
    """Maps worker type names to handlers."""

    def __init__(self) -> None:
        self._workers: dict[str, Worker] = {}

    def register(self, worker_type: str, worker: Worker) -> None:
        self._workers[str(worker_type)] = worker

    def get(self, worker_type: str) -> Worker:
        """Return the handler for ``worker_type``.

        Raises:
            UnknownWorkerTypeError: If nothing is registered for it.
        """
        worker = self._workers.get(str(worker_type))
        if worker is None:
            raise UnknownWorkerTypeError(str(worker_type))
        return worker

    def __contains__(self, worker_type: object) -> bool:
        return str(worker_type) in self._workers

    @property
    def worker_types(self) -> list[str]:
        return list(self._workers)


class LLMWorker:
    """Default worker: prompts the LLM with the step task and upstream outputs."""

    def __init__(
        self,
        llm_client: LLMClient,
        worker_type: str = WorkerType.GENERAL,
        model: str | None = None,
        temperature: float = 0.5,
    ) -> None:
        self.llm_client = llm_client
        self.worker_type = str(worker_type)
        self.model = model
        self.temperature = temperature

    async def run(self, worker_input: WorkerInput) -> WorkerResult:
        step = worker_input.step
        dependency_outputs = {
            dep_id: result.data
            for dep_id, result in worker_input.dependency_results.items()
            if result.success
        }
        messages = [
            {
                "role": "system",
                "content": WORKER_PROMPTS.get(self.worker_type, WORKER_PROMPTS["general"]),
            },
            {"role": "user", "content": build_worker_prompt(step.task, dependency_outputs)},
        ]
        response = await self.llm_client.call(
            messages=messages,
            model=self.model,
            temperature=self.temperature,
            actor_id=worker_input.context.get("actor_id"),
        )
        usage = worker_input.context.get("llm_metrics")
        if isinstance(usage, list):
            usage.append(response.metrics)
        return WorkerResult(
            step_id=step.id,
            success=True,
            data=response.content,
            duration_ms=int(response.metrics.latency_ms),
        )


def create_default_registry(
    llm_client: LLMClient,
    model: str | None = None,
) -> WorkerRegistry:
    """Registry with an ``LLMWorker`` for every built-in worker type."""
    registry = WorkerRegistry()
    for worker_type in WorkerType:
        registry.register(
            worker_type,
            LLMWorker(llm_client, worker_type, model=model),
        )
    return registry


def create_worker_dispatcher(
    registry: WorkerRegistry,
    timeout_seconds: float | None = None,
) -> WorkerDispatcher:
    """Build a dispatcher over ``registry`` with a per-step timeout.

    Unknown worker types and timeouts become failed results; other worker
    exceptions propagate to the executor, which records them as failures.
    """

    async def dispatch(worker_type: str, worker_input: WorkerInput) -> WorkerResult:
        step_id = worker_input.step.id
        try:
            worker = registry.get(worker_type)
        except UnknownWorkerTypeError as e:
            logger.warning("worker_type_unknown", worker_type=worker_type, step_id=step_id)
            return WorkerResult(step_id=step_id, success=False, error=str(e))

        if timeout_seconds is None:
            return await worker.run(worker_input)
        try:
            return await asyncio.wait_for(worker.run(worker_input), timeout=timeout_seconds)
        except TimeoutError:
            logger.warning("worker_step_timeout", step_id=step_id, timeout_seconds=timeout_seconds)
            return WorkerResult(
                step_id=step_id,
                success=False,
                error=f"Step {step_id} timed out after {timeout_seconds}s",
            )

    return dispatch


def create_mock_dispatcher(
    responses: dict[str, WorkerResult] | None = None,
) -> WorkerDispatcher:
    """Dispatcher returning canned results by step id, success otherwise."""
    canned = dict(responses or {})

    async def dispatch(worker_type: str, worker_input: WorkerInput) -> WorkerResult:
        response = canned.get(worker_input.step.id)
        if response is not None:
            return response
        return WorkerResult(
            step_id=worker_input.step.id,
            success=True,
            data=f"Mock result for {worker_type} worker",
            duration_ms=10,
        )

    return dispatch
