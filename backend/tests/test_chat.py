"""Tests for chat.py -- the conversational reply path."""

from typing import Any

import pytest

from chat import TOOL_LIMIT_MESSAGE, ChatAgent, ChatTool, trim_history
from llm.client import MockLLMClient
from tests.conftest import make_llm_response, make_tool_call


def _history(n: int) -> list[dict[str, Any]]:
    return [{"role": "user", "content": f"m{i}"} for i in range(n)]


async def _lookup(args: dict[str, Any]) -> str:
    return f"found {args.get('q')}"


class TestTrimHistory:
    def test_keeps_most_recent(self) -> None:
        assert [m["content"] for m in trim_history(_history(5), 2)] == ["m3", "m4"]

    def test_zero_keeps_nothing(self) -> None:
        assert trim_history(_history(3), 0) == []


class TestRespond:
    async def test_message_layout(self) -> None:
        llm = MockLLMClient(responses=[make_llm_response("Hello!")])
        agent = ChatAgent(llm, system_prompt="be nice", max_history=2)

        reply = await agent.respond("hi there", history=_history(4), actor_id="chat_1")

        sent = llm.call_history[0]
        assert sent["messages"][0] == {"role": "system", "content": "be nice"}
        assert [m["content"] for m in sent["messages"][1:]] == ["m2", "m3", "hi there"]
        assert sent["tools"] is None
        assert sent["actor_id"] == "chat_1"
        assert reply.content == "Hello!"
        assert reply.new_messages == [
            {"role": "user", "content": "hi there"},
            {"role": "assistant", "content": "Hello!"},
        ]
        assert len(reply.metrics) == 1

    async def test_empty_reply_raises(self) -> None:
        agent = ChatAgent(MockLLMClient(responses=[make_llm_response("   ")]))
        with pytest.raises(ValueError, match="empty"):
            await agent.respond("hi")

    async def test_provider_error_propagates(self) -> None:
        agent = ChatAgent(MockLLMClient(responses=[RuntimeError("provider down")]))
        with pytest.raises(RuntimeError, match="provider down"):
            await agent.respond("hi")


class TestToolLoop:
    async def test_tool_result_fed_back(self) -> None:
        llm = MockLLMClient(
            responses=[
                make_llm_response(tool_calls=[make_tool_call("lookup", {"q": "weather"})]),
                make_llm_response("It is sunny."),
            ]
        )
        agent = ChatAgent(llm, tools=[ChatTool("lookup", "Look things up", _lookup)])

        reply = await agent.respond("weather?")

        assert reply.content == "It is sunny."
        assert reply.tool_calls == 1
        second_call = llm.call_history[1]["messages"]
        assert second_call[-2]["tool_calls"][0]["function"]["name"] == "lookup"
        assert second_call[-1] == {
            "role": "tool",
            "tool_call_id": "tc_1",
            "content": "found weather",
        }
        # Tool traffic is not persisted.
        assert len(reply.new_messages) == 2

    async def test_tool_limit_forces_answer(self) -> None:
        call = make_tool_call("lookup", {"q": "x"})
        llm = MockLLMClient(default_response=make_llm_response(tool_calls=[call]))
        agent = ChatAgent(
            llm,
            tools=[ChatTool("lookup", "Look things up", _lookup)],
            max_tool_iterations=2,
        )

        reply = await agent.respond("loop forever")

        assert reply.content == TOOL_LIMIT_MESSAGE
        assert reply.tool_calls == 2
        assert len(llm.call_history) == 3

    async def test_unknown_and_failing_tools_reported_to_model(self) -> None:
        async def broken(args: dict[str, Any]) -> str:
            raise RuntimeError("boom")

        llm = MockLLMClient(
            responses=[
                make_llm_response(
                    tool_calls=[
                        make_tool_call("missing", {}, call_id="tc_1"),
                        make_tool_call("broken", {}, call_id="tc_2"),
                    ]
                ),
                make_llm_response("Sorry."),
            ]
        )
        agent = ChatAgent(llm, tools=[ChatTool("broken", "Always fails", broken)])

        await agent.respond("try")

        tool_messages = [m for m in llm.call_history[1]["messages"] if m["role"] == "tool"]
        assert tool_messages[0]["content"] == "Error: unknown tool 'missing'"
        assert tool_messages[1]["content"] == "Error: boom"

    async def test_non_string_tool_result_is_json(self) -> None:
        async def structured(args: dict[str, Any]) -> Any:
            return {"count": 3}

        llm = MockLLMClient(
            responses=[
                make_llm_response(tool_calls=[make_tool_call("count", {})]),
                make_llm_response("Three."),
            ]
        )
        agent = ChatAgent(llm, tools=[ChatTool("count", "Counts", structured)])

        await agent.respond("how many?")

        assert llm.call_history[1]["messages"][-1]["content"] == '{"count": 3}'
