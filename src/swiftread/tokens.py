from __future__ import annotations

import re

__all__ = [
    "normalize_text",
    "tokenize_text",
]

_WHITESPACE_RUN = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Collapse every whitespace run to a single space and trim both ends."""
    if not text:
        return ""
    return _WHITESPACE_RUN.sub(" ", text).strip()


def tokenize_text(text: str) -> list[str]:
    """
    Split text into display words.

    Words keep their surface form, including case and trailing punctuation,
    because sentence punctuation is what the text view and ORP rendering key on.
    """
    normalized = normalize_text(text)
    if not normalized:
        return []
    return [word for word in normalized.split(" ") if word]
