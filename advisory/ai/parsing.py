"""
Helpers for pulling structured data out of free-text LLM replies.

Replies may be bare JSON, fenced JSON, or prose with a JSON object somewhere
inside. Every helper returns None when nothing usable is found; callers
then take their deterministic fallback path.
"""

import json
import logging
import re

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)\n?```", re.DOTALL)


def _balanced_spans(text: str, opener: str, closer: str):
    """Yield substrings that start at ``opener`` and end at its matching ``closer``."""
    start = text.find(opener)
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == opener:
                depth += 1
            elif ch == closer:
                depth -= 1
                if depth == 0:
                    yield text[start:i + 1]
                    break
        start = text.find(opener, start + 1)


def _extract(text, opener, closer, expected_type):
    if not isinstance(text, str) or not text.strip():
        return None
    cleaned = text.strip()

    candidates = [cleaned]
    candidates.extend(m.group(1).strip() for m in _FENCE_RE.finditer(cleaned))
    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(value, expected_type):
            return value

    for span in _balanced_spans(cleaned, opener, closer):
        try:
            value = json.loads(span)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(value, expected_type):
            return value
    return None


def extract_json_object(text):
    """First JSON object found in ``text``, or None."""
    return _extract(text, "{", "}", dict)


def extract_json_array(text):
    """First JSON array found in ``text``, or None."""
    return _extract(text, "[", "]", list)


def as_list(value) -> list:
    """Coerce a parsed field into a list (scalars are wrapped, None is empty)."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, (tuple, set)):
        return list(value)
    return [value]


def as_float(value, default=None):
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def ask_for_json(gateway, instruction: str, context: str, *, purpose: str, extractor=None):
    """
    Call ``gateway.complete`` and extract JSON from the reply.

    Returns the parsed value, or None when there is no usable backend, the
    call fails, or the reply holds no JSON of the expected shape.
    """
    extractor = extractor or extract_json_object
    if gateway is None or not getattr(gateway, "is_configured", True):
        logger.debug("%s: no generative backend configured, using heuristics", purpose)
        return None
    try:
        reply = gateway.complete(instruction, context)
    except Exception as e:
        logger.warning("%s LLM call failed, using heuristics: %s", purpose, e)
        return None
    parsed = extractor(reply)
    if parsed is None:
        logger.warning("%s reply held no parsable JSON, using heuristics", purpose)
    return parsed
