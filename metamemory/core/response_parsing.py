"""Parsing helpers for JSON replies from tagging and summarization models."""

from __future__ import annotations

import json
import re


def strip_wrappers(response: str) -> str:
    """Remove markdown fences and <think> blocks around a model reply."""
    text = response.strip()

    if text.startswith("```"):
        lines = text.split("\n")[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines)

    # qwen3 and similar models wrap reasoning in <think>...</think>
    if "<think>" in text:
        text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL).strip()

    return text


def extract_json_object(response: str) -> dict | None:
    """Return the JSON object in *response*, or None if there is none."""
    text = strip_wrappers(response)

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}") + 1
        if start < 0 or end <= start:
            return None
        try:
            data = json.loads(text[start:end])
        except json.JSONDecodeError:
            return None

    return data if isinstance(data, dict) else None


def string_list(value) -> list[str]:
    """Coerce a JSON value into a list of non-empty strings."""
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]
