"""
Signature Normalization
=======================

Reduces an error text to a dedup key so that the same logical error seen
with different line numbers, ports, quoting or spacing maps to one pattern.
"""

import re

from adaptloop.classifier import ErrorCategory

MAX_SIGNATURE_BODY = 200

_DIGITS = re.compile(r"\d+")
_QUOTES = re.compile(r"[\"'`]")
_WHITESPACE = re.compile(r"\s+")


def normalize(error_text: str, category) -> str:
    """
    Build the signature "{category}:{normalized text}". Never raises.

    Lower-cases the text, replaces digit runs with "n", strips quote
    characters, collapses whitespace and truncates to 200 characters.
    """
    if isinstance(category, ErrorCategory):
        category = category.value

    text = (error_text or "").lower()
    text = _DIGITS.sub("n", text)
    text = _QUOTES.sub("", text)
    text = _WHITESPACE.sub(" ", text).strip()

    return f"{category}:{text[:MAX_SIGNATURE_BODY]}"
