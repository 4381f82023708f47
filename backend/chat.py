"""Simple chat path: one conversational reply with an optional tool loop.

The ``ChatAgent`` turns a combined batch text plus the actor's stored
history into a single assistant reply. When tools are registered the model
may call them for up to ``max_tool_iterations`` turns before it must answer.
Tool traffic stays inside the call; only the user text and the final answer
are returned for the history.
"""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from config import settings
from events.types import LLMMetrics
from llm.client import (
    LLMClient,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
)

logger = structlog.get_logger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[str]]

TOOL_LIMIT_MESSAGE = (
    "I wasn't able to finish that request within the tool call limit. "
    "Please try rephrasing or narrowing it down."
)


@dataclass
class ChatTool:
    """A callable tool exposed to the chat model.

    Attributes:
        name: Function name the model calls.
        description: What the tool does, shown to the model.
        parameters: JSON schema of the arguments.
        handler: Coroutine taking the parsed arguments and returning text.
    """

    name: str
    description: str
    handler: ToolHandler
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_llm_definition(self) -> dict[str, Any]:
        """Format for LiteLLM function calling."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ChatReply:
    """Result of one chat turn.

    Attributes:
        content: Final assistant text.
        new_messages: User and assistant entries to append to history.
        tool_calls: Tool invocations made while answering.
        metrics: Per-call LLM metrics, in call order.
    """

    content: str
    new_messages: list[dict[str, Any]]
    tool_calls: int = 0
    metrics: list[LLMMetrics] = field(default_factory=list)


def trim_history(history: list[dict[str, Any]], max_messages: int) -> list[dict[str, Any]]:
    """Keep only the most recent ``max_messages`` entries."""
    if max_messages <= 0:
        return []
    return list(history[-max_messages:])


class ChatAgent:
    """Conversational responder for requests that need no plan.

    Attributes:
        llm_client: Provider client.
        system_prompt: Prepended to every call.
        model: Model override; the client default when None.
        tools: Registered tools by name.
        max_history: Stored history entries sent with each call.
        max_tool_iterations: Tool-call turns allowed before a forced answer.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        system_prompt: str | None = None,
        model: str | None = None,
        tools: list[ChatTool] | None = None,
        max_history: int | None = None,
        max_tool_iterations: int | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.system_prompt = system_prompt or settings.chat_system_prompt
        self.model = model
        self.tools: dict[str, ChatTool] = {tool.name: tool for tool in tools or []}
        self.max_history = (
            max_history if max_history is not None else settings.chat_max_history
        )
        self.max_tool_iterations = (
            max_tool_iterations
            if max_tool_iterations is not None
            else settings.chat_max_tool_iterations
        )

    def register_tool(self, tool: ChatTool) -> None:
        self.tools[tool.name] = tool

    async def respond(
        self,
        text: str,
        history: list[dict[str, Any]] | None = None,
        actor_id: str | None = None,
    ) -> ChatReply:
        """Produce the assistant reply for ``text``.

        Args:
            text: Combined user text for this batch.
            history: Prior conversation entries (role/content dicts).
            actor_id: Used to tag LLM metric events.

        Returns:
            ChatReply with the answer and the history entries to append.

        Raises:
            ValueError: If the model returns no text at all.
            Exception: Provider errors propagate so the batch can be retried.
        """
        messages: list[dict[str, Any]] = [{"role": "system", "content": self.system_prompt}]
        messages.extend(trim_history(history or [], self.max_history))
        messages.append({"role": "user", "content": text})

        tool_definitions = [tool.to_llm_definition() for tool in self.tools.values()]
        metrics: list[LLMMetrics] = []
        tool_call_count = 0
        content = ""

        for iteration in range(self.max_tool_iterations + 1):
            response = await self.llm_client.call(
                messages=messages,
                tools=tool_definitions or None,
                model=self.model,
                actor_id=actor_id,
            )
            metrics.append(response.metrics)
            content = response.content

            if not response.tool_calls or not self.tools:
                break

            if iteration >= self.max_tool_iterations:
                logger.warning(
                    "chat_tool_limit_reached",
                    actor_id=actor_id,
                    iterations=iteration,
                )
                content = content or TOOL_LIMIT_MESSAGE
                break

            messages.append(
                format_assistant_message_with_tools(content, response.tool_calls)
            )
            for tool_call in response.tool_calls:
                tool_call_count += 1
                result = await self._run_tool(tool_call.name, tool_call.args, actor_id)
                messages.append(format_tool_result_for_llm(tool_call.id, result))

        if not content.strip():
            raise ValueError("LLM returned an empty response")

        logger.info(
            "chat_reply_generated",
            actor_id=actor_id,
            llm_calls=len(metrics),
            tool_calls=tool_call_count,
            response_length=len(content),
        )
        return ChatReply(
            content=content,
            new_messages=[
                {"role": "user", "content": text},
                {"role": "assistant", "content": content},
            ],
            tool_calls=tool_call_count,
            metrics=metrics,
        )

    async def _run_tool(
        self,
        name: str,
        args: dict[str, Any],
        actor_id: str | None,
    ) -> str:
        tool = self.tools.get(name)
        if tool is None:
            logger.warning("chat_unknown_tool", actor_id=actor_id, tool_name=name)
            return f"Error: unknown tool '{name}'"
        try:
            result = await tool.handler(args)
        except Exception as e:
            logger.warning(
                "chat_tool_failed",
                actor_id=actor_id,
                tool_name=name,
                error=str(e),
            )
            return f"Error: {e}"
        if isinstance(result, str):
            return result
        return json.dumps(result, default=str)
