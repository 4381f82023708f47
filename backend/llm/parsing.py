"""Helpers for pulling structured payloads out of free-form LLM text."""

import json
import re
from typing import Any

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_DECODER = json.JSONDecoder()


def _first_object(text: str) -> dict[str, Any] | None:
    """Decode the first JSON object that starts somewhere in ``text``."""
    start = text.find("{")
    while start != -1:
        try:
            value, _ = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Extract the first JSON object from an LLM response.

    Tried in order: the whole response, the body of each fenced code block,
    then any object embedded in surrounding prose.

    Args:
        response: The full LLM response text

    Returns:
        Parsed JSON dict if found, None otherwise
    """
    try:
        whole = json.loads(response.strip())
    except json.JSONDecodeError:
        whole = None
    if isinstance(whole, dict):
        return whole

    for match in _FENCE_PATTERN.finditer(response):
        found = _first_object(match.group(1))
        if found is not None:
            return found

    return _first_object(response)


def truncate(text: str, limit: int, marker: str = "...") -> str:
    """Cut ``text`` to ``limit`` characters, appending ``marker`` when cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + marker
