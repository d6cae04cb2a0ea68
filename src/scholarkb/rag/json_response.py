"""Permissive JSON-object extraction from LLM replies.

Models do not always return bare JSON: the object may be wrapped in a Markdown
fence or surrounded by prose. Extraction tries, in order: the whole reply, the
first fenced block, then the first decodable ``{...}`` in the text.
"""

from __future__ import annotations

import json
import re
from typing import Any

from scholarkb.errors import ParseError

_FENCE_RE: re.Pattern[str] = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def parse_json_object(text: str) -> dict[str, Any]:
    """Return the first JSON object found in *text*.

    Raises:
        ParseError: If no JSON object can be decoded.
    """
    if not text or not text.strip():
        raise ParseError("Empty LLM response")

    candidates = [text.strip()]
    fence = _FENCE_RE.search(text)
    if fence:
        candidates.append(fence.group(1).strip())
    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value

    decoder = json.JSONDecoder()
    pos = text.find("{")
    while pos != -1:
        try:
            value, _ = decoder.raw_decode(text, pos)
        except json.JSONDecodeError:
            pos = text.find("{", pos + 1)
            continue
        if isinstance(value, dict):
            return value
        pos = text.find("{", pos + 1)
    raise ParseError(f"No JSON object in LLM response: {text[:120]!r}")
