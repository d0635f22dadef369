from __future__ import annotations

import re
from typing import Any, List

# Anything that is not a letter, digit or whitespace (\w also admits "_")
_NON_WORD_RE = re.compile(r"[^\w\s]|_")
_SPACE_RE = re.compile(r"\s+")

MIN_TOKEN_LENGTH = 2


def normalize(text: Any) -> str:
    """
    Lowercase text, turn punctuation/symbols into spaces and collapse whitespace.

    Examples:
      "MSc Computer-Science (Hons)"  -> "msc computer science hons"
      "01/09/2025"                   -> "01 09 2025"
    """
    if text is None:
        return ""
    s = str(text).lower()
    s = _NON_WORD_RE.sub(" ", s)
    return _SPACE_RE.sub(" ", s).strip()


def tokenize(normalized: str) -> List[str]:
    """Split an already normalized string, dropping tokens shorter than 2 chars."""
    if not normalized:
        return []
    return [t for t in normalized.split() if len(t) >= MIN_TOKEN_LENGTH]
