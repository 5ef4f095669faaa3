"""
Structured Response Parsing
===========================

The single place where free-text model output is turned into a JSON object.

Models are asked to reply with JSON only, but replies still arrive wrapped
in markdown fences, preceded by prose, or cut off mid-object. Extraction
tries, in order:

1. A fenced ```json (or bare ```) block.
2. The first top-level object in the text. Objects nested inside a
   truncated one are not candidates.

Anything else raises ResponseParseError.
"""

import json
import re
from typing import Any, Dict, Iterable, Optional

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_HTML_FENCE_OPEN = re.compile(r"^\s*```(?:html)?\s*\n?", re.IGNORECASE)
_HTML_FENCE_CLOSE = re.compile(r"\n?\s*```\s*$")


class ResponseParseError(ValueError):
    """Model output did not contain a usable JSON object."""


def _decode_first_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Decode the first top-level object in text.

    A candidate that fails to decode is skipped up to the point where
    decoding failed, so braces nested inside a truncated object are never
    returned in its place.
    """
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError as e:
            start = text.find("{", max(e.pos, start + 1))
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None



def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Extract the first JSON object from model output.

    Raises:
        ResponseParseError: If no complete JSON object is present
    """
    if not text or not text.strip():
        raise ResponseParseError("Empty response")

    for match in _FENCED_BLOCK.finditer(text):
        data = _decode_first_object(match.group(1))
        if data is not None:
            return data

    data = _decode_first_object(text)
    if data is None:
        raise ResponseParseError("No JSON object found in response")
    return data


def parse_structured_response(
    text: str,
    required: Iterable[str] = (),
) -> Dict[str, Any]:
    """
    Extract a JSON object and check that the required keys are present.

    Args:
        text: Raw model output
        required: Keys that must be present and non-null

    Returns:
        The decoded object

    Raises:
        ResponseParseError: On missing JSON or missing keys
    """
    data = extract_json_object(text)
    missing = [key for key in required if data.get(key) is None]
    if missing:
        raise ResponseParseError(f"Response missing required fields: {', '.join(missing)}")
    return data


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```html ... ``` fence from generated markup."""
    text = _HTML_FENCE_OPEN.sub("", text or "", count=1)
    text = _HTML_FENCE_CLOSE.sub("", text, count=1)
    return text.strip()
