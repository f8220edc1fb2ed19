"""Utilities for parsing LLM responses into structured data."""

from __future__ import annotations

import json
from typing import Any

from ..models import LLMDirective


def extract_json_object(text: str) -> dict[str, Any]:
    """Extract the first JSON object found in *text* and return it as a dict."""

    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _strip_code_fence(cleaned)
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end == -1 or end <= start:
        raise ValueError("No JSON object found in LLM response")
    snippet = cleaned[start : end + 1]
    data = json.loads(snippet)
    if not isinstance(data, dict):
        raise ValueError("LLM response JSON is not an object")
    return data


def extract_json_array(text: str) -> list[Any]:
    """Extract the first JSON array found in *text*."""

    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _strip_code_fence(cleaned)
    start = cleaned.find("[")
    end = cleaned.rfind("]")
    if start == -1 or end == -1 or end <= start:
        raise ValueError("No JSON array found in LLM response")
    data = json.loads(cleaned[start : end + 1])
    if not isinstance(data, list):
        raise ValueError("LLM response JSON is not an array")
    return data


def parse_directive(text: str) -> LLMDirective:
    """Parse raw LLM output into an :class:`LLMDirective`."""

    data = extract_json_object(text)
    return LLMDirective.model_validate(data)


def _strip_code_fence(block: str) -> str:
    parts = block.split("```")
    if len(parts) >= 3:
        inner = parts[1]
        if inner.lower().startswith("json"):
            inner = inner[4:]
        return inner
    return block.strip("`")
