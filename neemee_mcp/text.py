"""Text normalization used for fuzzy notebook matching."""

from __future__ import annotations

import re

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_for_search(text: str | None) -> str:
    """Reduce ``text`` to a lowercase, punctuation-free, single-spaced key.

    The result is only ever used as a comparison key. The function is total
    and idempotent: ``normalize_for_search(normalize_for_search(x))`` equals
    ``normalize_for_search(x)`` for every string.
    """

    if not text:
        return ""
    lowered = text.lower()
    stripped = _NON_WORD.sub("", lowered)
    return _WHITESPACE.sub(" ", stripped).strip()
