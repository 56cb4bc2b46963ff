from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterator

from .errors import ParseError

logger = logging.getLogger(__name__)

RAW_EXCERPT_CHARS = 1000

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_OPENER = re.compile(r"[\{\[]")
_DECODER = json.JSONDecoder()
_CLOSERS = {"{": "}", "[": "]"}


def parse_model_json(raw: str) -> Any:
    """Parse model output as JSON, repairing truncation and markdown wrapping."""

    text = raw.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        first_error = exc

    logger.debug("Direct JSON parse failed (%s); attempting repair", first_error)

    for candidate in _repair_candidates(text):
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        logger.info("Recovered JSON from malformed model output")
        return value

    excerpt = raw[:RAW_EXCERPT_CHARS]
    logger.error(
        "Could not parse model output as JSON (%d chars): %s", len(raw), excerpt
    )
    raise ParseError(
        message=f"Failed to parse JSON response: {first_error}",
        raw_excerpt=excerpt,
    )


def close_truncated_json(text: str) -> str:
    """Append the closers a truncated document is missing, innermost first."""

    stack: list[str] = []
    in_string = False
    escaped = False

    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in ("}", "]") and stack and stack[-1] == char:
            stack.pop()

    repaired = text + '"' if in_string else text
    if stack:
        repaired = repaired.rstrip().rstrip(",")
    return repaired + "".join(reversed(stack))


def balance_by_count(text: str) -> str:
    """Count-based repair: missing brackets are appended before missing braces."""

    missing_brackets = text.count("[") - text.count("]")
    missing_braces = text.count("{") - text.count("}")

    repaired = text
    if missing_brackets > 0:
        repaired += "]" * missing_brackets
    if missing_braces > 0:
        repaired += "}" * missing_braces
    return repaired


def extract_json_block(text: str) -> str | None:
    """Return the first fenced block or embedded value that parses as JSON."""

    for fenced in _FENCED_BLOCK.finditer(text):
        block = fenced.group(1)
        for candidate in (block, close_truncated_json(block)):
            if _parses(candidate):
                return candidate

    for opener in _OPENER.finditer(text):
        start = opener.start()
        try:
            _, end = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            pass
        else:
            return text[start:end]

        closed = close_truncated_json(text[start:])
        try:
            _, end = _DECODER.raw_decode(closed)
        except json.JSONDecodeError:
            continue
        return closed[:end]

    return None


def _parses(text: str) -> bool:
    try:
        json.loads(text)
    except json.JSONDecodeError:
        return False
    return True


def _repair_candidates(text: str) -> Iterator[str]:
    seen = {text}
    for candidate in (close_truncated_json(text), balance_by_count(text)):
        if candidate not in seen:
            seen.add(candidate)
            yield candidate

    extracted = extract_json_block(text)
    if extracted is not None and extracted not in seen:
        yield extracted
