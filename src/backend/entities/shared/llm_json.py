"""Lenient JSON extraction from model responses."""

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def parse_llm_json(response_text: str) -> dict[str, Any] | None:
    """Parse a JSON object out of a model response.

    Tries, in order: the whole text, a fenced code block, the outermost
    ``{...}`` span, and finally the first flat ``{...}`` object.

    Args:
        response_text: The raw text response from the model.

    Returns:
        Parsed dictionary, or ``None`` when nothing parses to an object.
    """
    text = (response_text or "").strip()
    if not text:
        return None

    candidates = [text]

    fence = _FENCE_PATTERN.search(text)
    if fence:
        candidates.append(fence.group(1).strip())

    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])

    flat = re.search(r"\{[^{}]*\}", text, re.DOTALL)
    if flat:
        candidates.append(flat.group())

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(parsed, dict):
            return parsed

    logger.warning("Failed to parse model response as JSON: %s", text[:200])
    return None
