"""Tolerant JSON extraction from reasoning-model output."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

# Reasoning models (e.g. sonar-reasoning-pro) prefix their answer with a think block.
_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)
_FENCE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```$", re.DOTALL)


def _clean(text: str) -> str:
    cleaned = _THINK_BLOCK.sub("", text).strip()
    match = _FENCE.match(cleaned)
    if match:
        cleaned = match.group(1).strip()
    return cleaned


def extract_json_object(text: str | None) -> dict[str, Any] | None:
    """Return the first JSON object found in *text*, or ``None``.

    The whole (cleaned) text is tried first; otherwise every ``{`` is tried
    as the start of a brace-balanced candidate.
    """
    if not text or not text.strip():
        return None

    cleaned = _clean(text)
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except ValueError:
        pass

    start = cleaned.find("{")
    while start != -1:
        candidate = _balanced_object(cleaned, start)
        if candidate is not None:
            return candidate
        start = cleaned.find("{", start + 1)

    logger.debug("No JSON object found in model output (%d chars)", len(text))
    return None


def _balanced_object(text: str, start: int) -> dict[str, Any] | None:
    depth = 0
    in_string = False
    escape = False

    for i in range(start, len(text)):
        ch = text[i]

        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = in_string
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue

        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                try:
                    parsed = json.loads(text[start : i + 1])
                except ValueError:
                    return None
                return parsed if isinstance(parsed, dict) else None

    return None
