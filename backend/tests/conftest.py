"""Shared test fixtures for backend tests.

Provides an EventBus, in-memory stores and timer, a recording fake
transport, LLM response factories and message/plan factories so tests never
touch real LLM APIs or the network.
"""

import sys
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from batching.queue import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from batching.types import (  # noqa: E402
    BatchState,
    BatchStatus,
    ParsedInput,
    PendingMessage,
)
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import ActorEvent, LLMMetrics  # noqa: E402
from llm.client import LLMResponse, ToolCallData  # noqa: E402
from models.memory import (  # noqa: E402
    InMemoryActorStateStore,
    InMemoryObservabilitySink,
    InMemoryTimer,
)
from orchestration.types import ExecutionPlan, PlanStep  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


async def collect_events(event_bus: EventBus, actor_id: str) -> list[ActorEvent]:
    """Return every event recorded for an actor so far."""
    return event_bus.get_event_history(actor_id)


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


@pytest.fixture()
def state_store() -> InMemoryActorStateStore:
    return InMemoryActorStateStore()


@pytest.fixture()
def timer() -> InMemoryTimer:
    return InMemoryTimer()


@pytest.fixture()
def observability() -> InMemoryObservabilitySink:
    return InMemoryObservabilitySink()


class FakeTransport:
    """Recording ``Transport``.

    Attributes:
        sent: ``(message_ref, text)`` for every send.
        edits: ``(message_ref, text)`` for every successful edit.
        typing_calls: Number of typing indicators shown.
        fail_edit: Make every edit raise RuntimeError.
        fail_send: Make every send raise RuntimeError.
        edit_unsupported: Make every edit raise NotImplementedError.
    """

    def __init__(
        self,
        fail_edit: bool = False,
        fail_send: bool = False,
        edit_unsupported: bool = False,
    ) -> None:
        self.sent: list[tuple[str, str]] = []
        self.edits: list[tuple[str, str]] = []
        self.typing_calls = 0
        self.fail_edit = fail_edit
        self.fail_send = fail_send
        self.edit_unsupported = edit_unsupported
        self._counter = 0

    async def send(self, ctx: dict[str, Any], text: str) -> str:
        if self.fail_send:
            raise RuntimeError("send failed")
        self._counter += 1
        message_ref = f"ref_{self._counter}"
        self.sent.append((message_ref, text))
        return message_ref

    async def edit(self, ctx: dict[str, Any], message_ref: str, text: str) -> None:
        if self.edit_unsupported:
            raise NotImplementedError
        if self.fail_edit:
            raise RuntimeError("message to edit not found")
        self.edits.append((message_ref, text))

    async def typing(self, ctx: dict[str, Any]) -> None:
        self.typing_calls += 1

    def parse_context(self, ctx: dict[str, Any]) -> ParsedInput:
        metadata = {k: ctx[k] for k in ("request_id", "event_id") if ctx.get(k)}
        return ParsedInput(
            text=ctx.get("text", ""),
            user_id=ctx.get("user_id"),
            chat_id=ctx.get("chat_id"),
            username=ctx.get("username"),
            metadata=metadata,
        )

    @property
    def delivered_texts(self) -> list[str]:
        return [text for _, text in self.sent] + [text for _, text in self.edits]


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


# ---------------------------------------------------------------------------
# Response Factories
# ---------------------------------------------------------------------------


def make_llm_response(
    content: str = "",
    tool_calls: list[ToolCallData] | None = None,
    finish_reason: str = "stop",
) -> LLMResponse:
    """Create an LLMResponse with sensible defaults."""
    return LLMResponse(
        content=content,
        tool_calls=tool_calls or [],
        finish_reason="tool_calls" if tool_calls else finish_reason,
        metrics=LLMMetrics(model="mock", input_tokens=10, output_tokens=20, latency_ms=100),
    )


def make_tool_call(name: str, args: dict[str, Any], call_id: str = "tc_1") -> ToolCallData:
    """Create a ToolCallData."""
    return ToolCallData(id=call_id, name=name, args=args)


# ---------------------------------------------------------------------------
# Message / Batch Factories
# ---------------------------------------------------------------------------


def make_message(
    text: str = "hello",
    request_id: str = "req_1",
    received_at: int = 1_700_000_000_000,
    user_id: str | None = "user_1",
    correlation_id: str | None = None,
    actor_id: str = "chat_1",
) -> PendingMessage:
    return PendingMessage(
        text=text,
        received_at=received_at,
        request_id=request_id,
        user_id=user_id,
        chat_id=actor_id,
        correlation_id=correlation_id,
        original_context={"actor_id": actor_id, "text": text},
    )


def make_batch(
    *texts: str,
    status: BatchStatus = BatchStatus.PROCESSING,
    batch_id: str = "batch_1",
    last_heartbeat: int | None = None,
    retry_count: int = 0,
    started_at: int = 1_700_000_000_000,
) -> BatchState:
    messages = [
        make_message(text, request_id=f"req_{i}", received_at=started_at + i)
        for i, text in enumerate(texts or ("hello",))
    ]
    return BatchState(
        status=status,
        messages=messages,
        batch_id=batch_id,
        retry_count=retry_count,
        last_heartbeat=last_heartbeat,
        batch_started_at=started_at,
        last_message_at=messages[-1].received_at,
    )


def make_ctx(
    text: str,
    request_id: str | None = None,
    actor_id: str = "chat_1",
    user_id: str = "user_1",
    event_id: str | None = None,
) -> dict[str, Any]:
    """Raw inbound payload as the fake transport parses it."""
    ctx: dict[str, Any] = {"actor_id": actor_id, "text": text, "user_id": user_id}
    if request_id is not None:
        ctx["request_id"] = request_id
    if event_id is not None:
        ctx["event_id"] = event_id
    return ctx


# ---------------------------------------------------------------------------
# Plan Factories
# ---------------------------------------------------------------------------


def make_step(
    step_id: str,
    depends_on: list[str] | None = None,
    worker_type: str = "general",
    priority: int = 5,
    description: str | None = None,
) -> PlanStep:
    return PlanStep(
        id=step_id,
        description=description or f"Do {step_id}",
        worker_type=worker_type,
        task=f"Task for {step_id}",
        depends_on=depends_on or [],
        priority=priority,
    )


def make_plan(*steps: PlanStep, summary: str = "Test plan") -> ExecutionPlan:
    return ExecutionPlan(task_id="task_test", summary=summary, steps=list(steps))
