"""Robust JSON extraction from LLM responses.

Generation output is free text that is usually JSON-shaped but may be
wrapped in a markdown fence or in prose, truncated before its closing
brackets, or carry raw newlines inside string literals. The repairs below
only touch string escaping, trailing commas and missing closers; anything
else in the payload is left as the model wrote it.
"""
import json
import re
from typing import Any, List, Optional

from iris_workflow.utils.logging import get_logger

logger = get_logger("iris_workflow.json_parser")

_JSON_FENCE = re.compile(r"```json\b\s*([\s\S]*?)\s*```", re.IGNORECASE)
_JSON_FENCE_OPEN = re.compile(r"^```json\b\s*", re.IGNORECASE)
_HTML_FENCE = re.compile(r"```html\s([\s\S]*?)\s```", re.IGNORECASE)

_CLOSERS = {"{": "}", "[": "]"}


def extract_json_block(text: str) -> str:
    """Return the interior of a ```json fenced block.

    Falls back to the original text when there is no fence or when the
    fenced block is empty. An opening fence with no closing fence (a
    truncated response) yields everything after the opening fence.

    Raises:
        TypeError: If text is not a string.
    """
    if not isinstance(text, str):
        raise TypeError("extract_json_block expects a string input")

    normalized = text.strip()
    match = _JSON_FENCE.search(normalized)
    if match:
        captured = match.group(1).strip()
        return captured if captured else text

    if _JSON_FENCE_OPEN.match(normalized):
        remainder = _JSON_FENCE_OPEN.sub("", normalized, count=1).strip()
        return remainder if remainder else text

    return text


def extract_html_block(text: str) -> str:
    """Return the interior of a ```html fenced block, else the text unchanged."""
    if not text:
        return text
    match = _HTML_FENCE.search(text)
    if match and match.group(1):
        return match.group(1)
    return text


def parse_json_lenient(text: Optional[str]) -> Any:
    """Best-effort parse of JSON-shaped model output.

    Tries, in order: the text as-is (minus a fence), then a repaired
    candidate (sliced to the outermost value, raw newlines escaped inside
    strings, trailing commas removed), then the repaired candidate with
    missing closing brackets appended.

    Returns:
        The parsed value, or None when nothing could be recovered. Never raises.
    """
    if not text or not isinstance(text, str):
        return None

    trimmed = text.strip()
    if not trimmed:
        return None

    for candidate in _build_candidates(trimmed):
        try:
            return json.loads(candidate)
        except (json.JSONDecodeError, RecursionError):
            continue

    logger.error("json_parse_failed", input=text)
    return None


# ---------------------------------------------------------------------------
# Repair steps
# ---------------------------------------------------------------------------

def _build_candidates(raw: str) -> List[str]:
    unfenced = _strip_fence(raw)
    candidates = [unfenced]

    sanitized = _sanitize(unfenced)
    if sanitized != unfenced:
        candidates.append(sanitized)

    balanced = _strip_trailing_commas(sanitized + _missing_closers(sanitized))
    if balanced != sanitized:
        candidates.append(balanced)

    return candidates


def _strip_fence(raw: str) -> str:
    result = _JSON_FENCE_OPEN.sub("", raw, count=1)
    if result.endswith("```"):
        result = result[:-3]
    return result.strip()


def _sanitize(raw: str) -> str:
    result = _slice_outer_value(raw)
    result = _escape_newlines_in_strings(result)
    return _strip_trailing_commas(result)


def _slice_outer_value(raw: str) -> str:
    """Drop prose around the first object/array.

    The slice ends at the bracket that closes the first opener. When the
    value never closes (truncated output), everything up to the end is kept
    so the balancing step can finish it.
    """
    starts = [i for i in (raw.find("{"), raw.find("[")) if i >= 0]
    if not starts:
        return raw
    start = min(starts)

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(raw)):
        char = raw[i]
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return raw[start:i + 1]

    return raw[start:].rstrip()


def _escape_newlines_in_strings(raw: str) -> str:
    output = []
    in_string = False
    escaped = False

    for char in raw:
        if escaped:
            output.append(char)
            escaped = False
            continue
        if char == "\\":
            output.append(char)
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            output.append(char)
            continue
        if in_string and char in "\r\n":
            output.append("\\n")
            continue
        output.append(char)

    return "".join(output)


def _strip_trailing_commas(raw: str) -> str:
    """Remove commas that directly precede a closer, outside string literals."""
    output = []
    pending_comma = None  # index in output of a comma that may be trailing
    in_string = False
    escaped = False

    for char in raw:
        if in_string:
            output.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char in "}]" and pending_comma is not None:
            del output[pending_comma]
            pending_comma = None
        elif char == ",":
            pending_comma = len(output)
        elif not char.isspace():
            pending_comma = None

        if char == '"':
            in_string = True
        output.append(char)

    return "".join(output)


def _missing_closers(raw: str) -> str:
    """Closers for every unmatched opener, innermost first."""
    stack = []
    in_string = False
    escaped = False

    for char in raw:
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in "}]" and stack:
            stack.pop()

    return "".join(reversed(stack))
