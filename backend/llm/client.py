"""LiteLLM-backed provider client shared by every LLM caller in the backend.

The chat path, the planner, the LLM workers and the aggregator all go through
``LLMClient.call``. Transient provider errors are retried on the primary model
with capped exponential backoff; once those attempts are used up the optional
fallback model gets one attempt. Successful calls publish LLM_CALL_COMPLETE
for the actor, and a call that gives up publishes AGENT_ERROR before the
exception reaches the caller (where the batch retry policy takes over).

``MockLLMClient`` replays canned responses for tests and ``use_mock_llm`` runs.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    APIConnectionError,
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings
from events.bus import EventBus
from events.types import ActorEvent, EventType, LLMMetrics

logger = structlog.get_logger(__name__)

# Worth another attempt on the same model.
RETRYABLE_ERRORS = (RateLimitError, ServiceUnavailableError, Timeout, APIConnectionError)

# The request itself is wrong; retrying or falling back cannot help.
FATAL_ERRORS = (AuthenticationError, BadRequestError)


@dataclass
class ToolCallData:
    """A function call requested by the model.

    Attributes:
        id: Provider id, echoed back in the tool result message
        name: Registered tool name
        args: Decoded arguments
    """

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class LLMResponse:
    """One completed provider call.

    Attributes:
        content: Assistant text (empty when the model only called tools)
        tool_calls: Requested tool invocations, in order
        finish_reason: Provider stop reason (stop, tool_calls, length, ...)
        metrics: Token usage and latency
        raw_response: Untouched LiteLLM response, for debugging
    """

    content: str
    tool_calls: list[ToolCallData]
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)


def normalize_tool_args(raw_args: Any) -> dict[str, Any]:
    """Coerce a tool call's ``arguments`` into a dict.

    Providers normally send a JSON string but sometimes send a dict, a JSON
    array or text that does not parse. Unparseable text is kept under
    ``raw`` and any non-object value under ``value``.
    """
    if raw_args is None:
        return {}
    if isinstance(raw_args, dict):
        return raw_args
    if not isinstance(raw_args, str):
        return {"value": raw_args}
    try:
        decoded = json.loads(raw_args)
    except json.JSONDecodeError:
        return {"raw": raw_args}
    return decoded if isinstance(decoded, dict) else {"value": decoded}


def _tool_calls_from(message: Any) -> list[ToolCallData]:
    return [
        ToolCallData(
            id=call.id,
            name=call.function.name,
            args=normalize_tool_args(call.function.arguments),
        )
        for call in message.tool_calls or []
    ]


class LLMClient:
    """Provider client with retries, a fallback model and per-actor metrics.

    Attributes:
        event_bus: Receives LLM_CALL_COMPLETE / AGENT_ERROR when an actor id is given
        default_model: Used when a call names no model
        fallback_model: Tried once after the primary model's attempts are used up
        retry_attempts: Extra attempts on the primary model for transient errors
        retry_delay: Backoff base in seconds
        max_retry_delay: Upper bound on a single backoff sleep
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
        max_retry_delay: float = 4.0,
    ) -> None:
        self.event_bus = event_bus
        self.default_model = default_model or settings.default_model
        self.fallback_model = fallback_model or settings.llm_fallback_model
        self.retry_attempts = (
            settings.llm_max_retries if retry_attempts is None else retry_attempts
        )
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay

    def backoff_delay(self, failures: int) -> float:
        """Sleep before the next attempt after ``failures`` consecutive failures."""
        return min(self.retry_delay * (2 ** max(failures - 1, 0)), self.max_retry_delay)

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        actor_id: str | None = None,
    ) -> LLMResponse:
        """Run one completion.

        Args:
            messages: Chat messages (role/content dicts, tool messages included)
            tools: Function definitions the model may call
            model: LiteLLM model name; ``default_model`` when None
            temperature: Sampling temperature
            max_tokens: Completion token cap
            actor_id: Actor to publish metric and error events for

        Returns:
            The parsed response.

        Raises:
            AuthenticationError: Credentials rejected; never retried.
            BadRequestError: Malformed request; never retried.
            Exception: The primary model's last transient error once retries
                and the fallback are exhausted.
        """
        primary = model or self.default_model
        request: dict[str, Any] = {
            "messages": messages,
            "tools": tools,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        started = time.monotonic()
        failures = 0

        while True:
            try:
                return await self._attempt(primary, request, started, actor_id, failures + 1)
            except FATAL_ERRORS as e:
                logger.error(
                    "llm_call_rejected",
                    model=primary,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                await self._report_failure(actor_id, e, primary, 0, False)
                raise
            except RETRYABLE_ERRORS as e:
                failures += 1
                last_error: Exception = e
                if failures > self.retry_attempts:
                    logger.error(
                        "llm_call_retries_exhausted",
                        model=primary,
                        attempts=failures,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    break
                delay = self.backoff_delay(failures)
                logger.warning(
                    "llm_call_retry",
                    model=primary,
                    attempt=failures,
                    max_retries=self.retry_attempts,
                    error_type=type(e).__name__,
                    error=str(e),
                    retry_delay=delay,
                )
                await self._async_sleep(delay)

        used_fallback = self.fallback_model is not None and self.fallback_model != primary
        if self.fallback_model is not None and used_fallback:
            logger.warning(
                "llm_fallback_attempt",
                primary_model=primary,
                fallback_model=self.fallback_model,
                primary_failures=failures,
            )
            try:
                return await self._attempt(self.fallback_model, request, started, actor_id, 1)
            except Exception as fallback_error:
                # The primary error stays the one reported and raised.
                logger.error(
                    "llm_fallback_failed",
                    fallback_model=self.fallback_model,
                    error_type=type(fallback_error).__name__,
                    error=str(fallback_error),
                )

        await self._report_failure(actor_id, last_error, primary, failures, used_fallback)
        raise last_error

    async def _attempt(
        self,
        model: str,
        request: dict[str, Any],
        started: float,
        actor_id: str | None,
        attempt: int,
    ) -> LLMResponse:
        raw = await self._make_request(model=model, **request)
        response = self._parse_response(raw, model, int((time.monotonic() - started) * 1000))
        metrics = response.metrics
        logger.info(
            "llm_call_complete",
            model=metrics.model,
            attempt=attempt,
            input_tokens=metrics.input_tokens,
            output_tokens=metrics.output_tokens,
            latency_ms=metrics.latency_ms,
            tool_calls=len(response.tool_calls),
        )
        if self.event_bus is not None and actor_id:
            await self.event_bus.publish(
                ActorEvent(
                    type=EventType.LLM_CALL_COMPLETE,
                    actor_id=actor_id,
                    data=metrics.model_dump(),
                )
            )
        return response

    async def _make_request(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        options: dict[str, Any] = {"timeout": settings.llm_request_timeout_seconds}
        if tools:
            options.update(tools=tools, tool_choice="auto")
        if max_tokens:
            options["max_tokens"] = max_tokens
        return await acompletion(
            model=model,
            messages=messages,
            temperature=temperature,
            **options,
        )

    def _parse_response(self, raw: ModelResponse, model: str, latency_ms: int) -> LLMResponse:
        """Flatten a LiteLLM response; the provider-reported model name wins."""
        choice = raw.choices[0]
        usage = getattr(raw, "usage", None)
        return LLMResponse(
            content=choice.message.content or "",
            tool_calls=_tool_calls_from(choice.message),
            finish_reason=choice.finish_reason or "unknown",
            metrics=LLMMetrics(
                model=getattr(raw, "model", None) or model,
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
                latency_ms=latency_ms,
            ),
            raw_response=raw,
        )

    async def _report_failure(
        self,
        actor_id: str | None,
        error: Exception,
        model: str,
        retry_count: int,
        used_fallback: bool,
    ) -> None:
        if self.event_bus is None or not actor_id:
            return
        await self.event_bus.publish(
            ActorEvent(
                type=EventType.AGENT_ERROR,
                actor_id=actor_id,
                data={
                    "phase": "llm_call",
                    "error": str(error),
                    "error_type": type(error).__name__,
                    "model": model,
                    "retry_count": retry_count,
                    "used_fallback": used_fallback,
                    "fallback_model": self.fallback_model,
                },
            )
        )

    async def _async_sleep(self, seconds: float) -> None:
        # Separate method so tests can skip the backoff.
        await asyncio.sleep(seconds)


def format_tool_result_for_llm(tool_call_id: str, result: str) -> dict[str, Any]:
    """Tool message answering one of the assistant's tool calls."""
    return {"role": "tool", "tool_call_id": tool_call_id, "content": result}


def format_assistant_message_with_tools(
    content: str,
    tool_calls: list[ToolCallData],
) -> dict[str, Any]:
    """Assistant message carrying its tool calls in OpenAI wire format.

    The arguments are re-encoded as a JSON string, which is what providers
    expect to see when the conversation is replayed.
    """
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.args)},
            }
            for call in tool_calls
        ]
    return message


class MockLLMClient(LLMClient):
    """Offline client that replays a script of responses.

    Entries are returned in order; an ``Exception`` entry is raised instead,
    to simulate a provider failure. Once the script runs out the
    ``default_response`` is returned, or ``IndexError`` raised when there is
    none. Every call is recorded in ``call_history``.

    Usage:
        >>> client = MockLLMClient(responses=[make_llm_response("Hello")])
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[LLMResponse | Exception] | None = None,
        default_response: LLMResponse | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.responses: list[LLMResponse | Exception] = list(responses or [])
        self.default_response = default_response
        self.call_history: list[dict[str, Any]] = []
        self._cursor = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        actor_id: str | None = None,
    ) -> LLMResponse:
        self.call_history.append(
            {
                "messages": messages,
                "tools": tools,
                "model": model or self.default_model,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "actor_id": actor_id,
            }
        )

        if self._cursor >= len(self.responses):
            if self.default_response is None:
                raise IndexError("No more mock responses available")
            return self.default_response

        entry = self.responses[self._cursor]
        self._cursor += 1
        if isinstance(entry, Exception):
            raise entry

        logger.debug(
            "mock_llm_call",
            response_index=self._cursor - 1,
            tool_calls=len(entry.tool_calls),
        )
        return entry

    def reset(self) -> None:
        """Rewind the script and forget recorded calls."""
        self._cursor = 0
        self.call_history.clear()
