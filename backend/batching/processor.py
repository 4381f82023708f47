"""Unit-of-work executor for a promoted batch.

``BatchProcessor.process`` takes the active batch, shows a "thinking"
placeholder, keeps the batch's heartbeat fresh while it works, routes the
combined text to the chat agent or the plan pipeline, and delivers the final
answer by editing the placeholder. It never writes actor state itself; the
coordinator commits the returned ``ProcessingOutcome``.
"""

import asyncio
import contextlib
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from batching.ports import Transport
from batching.queue import combine_batch_messages, split_clear_batch
from batching.types import BatchState, HeartbeatConfig
from chat import ChatAgent
from config import ConfigurationError, settings
from orchestration.graph import OrchestrationGraph
from telemetry import BatchTelemetry, Stage

logger = structlog.get_logger(__name__)

HeartbeatCallback = Callable[[str | None], Awaitable[None]]

THINKING_MESSAGES = [
    "Thinking...",
    "Working on it...",
    "Still thinking...",
    "Gathering the details...",
    "Putting it all together...",
    "Almost there...",
]

CLEAR_CONFIRMATION = "Conversation history cleared. Let's start fresh."
PLAN_PREFIX = "/plan"

# Numbered or bulleted lines, or sequencing words.
_MULTI_STEP_RE = re.compile(
    r"(^\s*(\d+[.)]|[-*•])\s+)"
    r"|\b(then|after that|afterwards|finally|next|step \d+|first,|second,|and also)\b",
    re.IGNORECASE | re.MULTILINE,
)


class Route(StrEnum):
    CHAT = "chat"
    ORCHESTRATION = "orchestration"
    CLEAR = "clear"


@dataclass
class ProcessingOutcome:
    """What a successful unit of work produced.

    Attributes:
        response: Final text delivered to the user.
        route: Which path produced it.
        history_messages: Entries to append to the conversation history.
        clear_history: True when the batch was a clear command.
        message_ref: Reference of the delivered message.
        discarded_messages: Sibling messages dropped by a clear command.
    """

    response: str
    route: Route
    history_messages: list[dict[str, Any]] = field(default_factory=list)
    clear_history: bool = False
    message_ref: str | None = None
    discarded_messages: int = 0


class ThinkingRotator:
    """Cycles through placeholder texts while a batch is processing."""

    def __init__(self, messages: list[str] | None = None) -> None:
        self.messages = messages or THINKING_MESSAGES
        self._index = 0

    def current(self) -> str:
        return self.messages[self._index % len(self.messages)]

    def next(self) -> str:
        self._index += 1
        return self.current()


def looks_multi_step(text: str, min_chars: int) -> bool:
    """Heuristic for requests worth planning: long enough and sequenced."""
    return len(text) >= min_chars and _MULTI_STEP_RE.search(text) is not None


def choose_route(
    text: str,
    orchestration_enabled: bool,
    min_chars: int,
) -> tuple[Route, str]:
    """Pick the processing path and return the text to hand it.

    A leading ``/plan`` always forces the plan pipeline and is stripped.
    """
    stripped = text.strip()
    first_token = stripped.split(maxsplit=1)[0].lower() if stripped else ""
    if first_token.split("@", 1)[0] == PLAN_PREFIX:
        remainder = stripped.split(maxsplit=1)
        return Route.ORCHESTRATION, remainder[1] if len(remainder) > 1 else ""
    if orchestration_enabled and looks_multi_step(stripped, min_chars):
        return Route.ORCHESTRATION, stripped
    return Route.CHAT, stripped


class BatchProcessor:
    """Runs one promoted batch end to end.

    Attributes:
        transport: Delivers the placeholder and the final text.
        chat_agent: Handles conversational requests.
        orchestration_graph: Handles complex requests.
        heartbeat_config: Interval at which liveness is refreshed.
        thinking_rotation_interval_ms: Minimum gap between placeholder edits.
        orchestration_enabled: Allow the heuristic to route to the pipeline.
        orchestration_min_chars: Minimum length for heuristic routing.
    """

    def __init__(
        self,
        transport: Transport,
        chat_agent: ChatAgent,
        orchestration_graph: OrchestrationGraph | None = None,
        heartbeat_config: HeartbeatConfig | None = None,
        thinking_rotation_interval_ms: int | None = None,
        orchestration_enabled: bool | None = None,
        orchestration_min_chars: int | None = None,
    ) -> None:
        self.transport = transport
        self.chat_agent = chat_agent
        self.orchestration_graph = orchestration_graph
        self.heartbeat_config = heartbeat_config or HeartbeatConfig.from_settings()
        self.thinking_rotation_interval_ms = (
            thinking_rotation_interval_ms
            if thinking_rotation_interval_ms is not None
            else settings.thinking_rotation_interval_ms
        )
        self.orchestration_enabled = (
            orchestration_enabled
            if orchestration_enabled is not None
            else settings.orchestration_enabled
        )
        self.orchestration_min_chars = (
            orchestration_min_chars
            if orchestration_min_chars is not None
            else settings.orchestration_min_chars
        )
        if self.orchestration_enabled and self.orchestration_graph is None:
            raise ConfigurationError(
                "Orchestration is enabled but no orchestration graph was provided"
            )

    async def process(
        self,
        actor_id: str,
        batch: BatchState,
        history: list[dict[str, Any]],
        heartbeat: HeartbeatCallback,
        telemetry: BatchTelemetry | None = None,
    ) -> ProcessingOutcome:
        """Execute ``batch`` and deliver its response.

        Args:
            actor_id: Owning actor.
            batch: The active batch, already marked processing.
            history: Conversation history snapshot.
            heartbeat: Persists liveness (and the placeholder reference).
            telemetry: Accumulator for this attempt.

        Returns:
            ProcessingOutcome for the coordinator to commit.

        Raises:
            Exception: Any processing or final-delivery failure, so the
                coordinator can schedule a retry.
        """
        telemetry = telemetry or BatchTelemetry(actor_id=actor_id, batch_id=batch.batch_id)
        ctx = batch.messages[0].original_context if batch.messages else {}

        command, discarded = split_clear_batch(batch)
        if command is not None:
            return await self._process_clear(actor_id, batch, ctx, discarded, telemetry)

        route, text = choose_route(
            combine_batch_messages(batch.messages),
            self.orchestration_enabled and self.orchestration_graph is not None,
            self.orchestration_min_chars,
        )
        if route == Route.ORCHESTRATION and self.orchestration_graph is None:
            route = Route.CHAT
        telemetry.record_route(route.value)
        telemetry.record_stage(Stage.PROCESSING, route=route.value)

        rotator = ThinkingRotator()
        await self._safe_typing(ctx)
        message_ref = await self._show_placeholder(ctx, batch.message_ref, rotator.current())
        await heartbeat(message_ref)

        heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(ctx, message_ref, heartbeat, rotator),
            name=f"heartbeat_{actor_id}",
        )
        try:
            if route == Route.ORCHESTRATION:
                response = await self._run_orchestration(actor_id, batch, text, telemetry)
            else:
                response = await self._run_chat(actor_id, text, history, telemetry)
        finally:
            heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat_task

        delivered_ref = await self.deliver(ctx, message_ref, response)
        telemetry.record_stage(Stage.RESPONDED, response_length=len(response))
        return ProcessingOutcome(
            response=response,
            route=route,
            history_messages=[
                {"role": "user", "content": text},
                {"role": "assistant", "content": response},
            ],
            message_ref=delivered_ref,
        )

    async def _process_clear(
        self,
        actor_id: str,
        batch: BatchState,
        ctx: dict[str, Any],
        discarded: list[Any],
        telemetry: BatchTelemetry,
    ) -> ProcessingOutcome:
        telemetry.record_route(Route.CLEAR.value)
        telemetry.discarded_messages = len(discarded)
        telemetry.record_stage(Stage.PROCESSING, route=Route.CLEAR.value)
        if discarded:
            logger.info(
                "clear_command_discarded_messages",
                actor_id=actor_id,
                batch_id=batch.batch_id,
                discarded_count=len(discarded),
            )
        message_ref = await self.deliver(ctx, batch.message_ref, CLEAR_CONFIRMATION)
        telemetry.record_stage(Stage.RESPONDED)
        return ProcessingOutcome(
            response=CLEAR_CONFIRMATION,
            route=Route.CLEAR,
            clear_history=True,
            message_ref=message_ref,
            discarded_messages=len(discarded),
        )

    async def _run_chat(
        self,
        actor_id: str,
        text: str,
        history: list[dict[str, Any]],
        telemetry: BatchTelemetry,
    ) -> str:
        reply = await self.chat_agent.respond(text, history, actor_id=actor_id)
        for metrics in reply.metrics:
            telemetry.record_llm_call(metrics)
        return reply.content

    async def _run_orchestration(
        self,
        actor_id: str,
        batch: BatchState,
        text: str,
        telemetry: BatchTelemetry,
    ) -> str:
        assert self.orchestration_graph is not None
        final_state = await self.orchestration_graph.run(text, actor_id, batch.batch_id)
        for metrics in final_state.get("llm_metrics", []):
            telemetry.record_llm_call(metrics)
        aggregation = final_state.get("aggregation")
        if aggregation is not None:
            telemetry.record_plan(
                total_steps=aggregation.summary.total_steps,
                succeeded=aggregation.summary.success_count,
                failed=aggregation.summary.failure_count,
                skipped=aggregation.summary.skipped_count,
            )
        return final_state["response"]

    async def _heartbeat_loop(
        self,
        ctx: dict[str, Any],
        message_ref: str | None,
        heartbeat: HeartbeatCallback,
        rotator: ThinkingRotator,
    ) -> None:
        """Refresh liveness, then typing, then the placeholder, every interval.

        The heartbeat is persisted before any transport call so a failing
        edit never makes a live batch look stuck.
        """
        interval = self.heartbeat_config.interval_ms / 1000
        last_rotation = time.monotonic()
        while True:
            await asyncio.sleep(interval)
            try:
                await heartbeat(message_ref)
            except Exception as e:
                logger.error("heartbeat_write_failed", error=str(e))
            await self._safe_typing(ctx)
            elapsed_ms = (time.monotonic() - last_rotation) * 1000
            if message_ref is not None and elapsed_ms >= self.thinking_rotation_interval_ms:
                last_rotation = time.monotonic()
                try:
                    await self.transport.edit(ctx, message_ref, rotator.next())
                except Exception as e:
                    logger.warning("thinking_edit_failed", message_ref=message_ref, error=str(e))

    async def _safe_typing(self, ctx: dict[str, Any]) -> None:
        try:
            await self.transport.typing(ctx)
        except Exception as e:
            logger.warning("typing_indicator_failed", error=str(e))

    async def _show_placeholder(
        self,
        ctx: dict[str, Any],
        existing_ref: str | None,
        text: str,
    ) -> str | None:
        """Reuse the placeholder from an earlier attempt, or send a new one."""
        if existing_ref is not None:
            try:
                await self.transport.edit(ctx, existing_ref, text)
                return existing_ref
            except Exception as e:
                logger.warning("placeholder_edit_failed", message_ref=existing_ref, error=str(e))
        try:
            return await self.transport.send(ctx, text)
        except Exception as e:
            logger.warning("placeholder_send_failed", error=str(e))
            return None

    async def deliver(self, ctx: dict[str, Any], message_ref: str | None, text: str) -> str:
        """Edit the placeholder into ``text``, sending a new message if that fails."""
        if message_ref is not None:
            try:
                await self.transport.edit(ctx, message_ref, text)
                return message_ref
            except NotImplementedError:
                pass
            except Exception as e:
                logger.warning("final_edit_failed_sending", message_ref=message_ref, error=str(e))
        return await self.transport.send(ctx, text)
