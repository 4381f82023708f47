"""LLM provider integration.

Exports the LiteLLM-backed client, its mock, and the JSON extraction helpers
used by the planner and the aggregator.
"""

from llm.client import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    ToolCallData,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
    normalize_tool_args,
)
from llm.parsing import extract_json_from_response, truncate

__all__ = [
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "ToolCallData",
    "extract_json_from_response",
    "format_assistant_message_with_tools",
    "format_tool_result_for_llm",
    "normalize_tool_args",
    "truncate",
]
