"""Recover a structured record from raw model text.

Models answer with prose around a fenced ``json`` block, with a bare JSON
document, or with nothing usable at all. ``parse_structured`` is pure: it
never touches the network and never tries to repair malformed JSON.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from reqflow.errors import ParseError


logger = logging.getLogger(__name__)

# Opening fence of a block tagged json; the tag is case-insensitive.
_JSON_FENCE = re.compile(r"```[ \t]*json\b", re.IGNORECASE)

_decoder = json.JSONDecoder()


def _decode_record(text: str, start: int = 0) -> dict[str, Any]:
    """Decode the JSON value starting at ``start``; whatever follows it is ignored."""
    while start < len(text) and text[start].isspace():
        start += 1
    value, _ = _decoder.raw_decode(text, start)
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object, got {type(value).__name__}")
    return value


def find_fenced_block(raw_text: str) -> int | None:
    """Offset just past the first ```json opening fence, if any."""
    match = _JSON_FENCE.search(raw_text)
    return match.end() if match else None


def parse_structured(raw_text: str | None) -> dict[str, Any]:
    """Extract a single JSON object from ``raw_text``.

    The first ```json fenced block is tried first; if there is none, or it
    does not decode to an object, the whole text is decoded instead. Either way
    decoding stops at the end of the first JSON value and anything after it is
    ignored. An empty object is a valid result; checking its shape is the
    caller's job.

    Raises:
        ParseError: neither attempt produced a JSON object.
    """
    if raw_text is None or not raw_text.strip():
        raise ParseError("response is empty", raw_text or "")

    body_start = find_fenced_block(raw_text)
    if body_start is not None:
        try:
            return _decode_record(raw_text, body_start)
        except ValueError as e:
            logger.debug(f"Fenced block did not decode, trying whole text: {e}")

    try:
        return _decode_record(raw_text)
    except ValueError as e:
        raise ParseError(f"no JSON object found: {e}", raw_text) from e
