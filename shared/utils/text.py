"""
Small text helpers shared by the scoring components.
"""

import re
from functools import lru_cache
from difflib import SequenceMatcher
from typing import Iterable, List, Tuple

_WORD_RE = re.compile(r"\b\w+\b")
_TOKEN_RE = re.compile(r"[A-Za-z0-9_'$-]+")

# Keywords up to this length must match a whole word; longer ones also
# match as a word prefix ("play" matches "players").
WHOLE_WORD_MAX_LENGTH = 3


def normalize_text(text: str) -> str:
    return " ".join((text or "").lower().split())


def words(text: str) -> List[str]:
    """Lower-cased word tokens."""
    return _WORD_RE.findall((text or "").lower())


def tokens_with_positions(text: str) -> List[Tuple[str, int]]:
    """Whitespace-ish tokens with their character offsets, punctuation stripped."""
    result = []
    for match in _TOKEN_RE.finditer(text or ""):
        token = match.group(0).strip("'-")
        if token:
            result.append((token, match.start()))
    return result


def text_similarity(a: str, b: str) -> float:
    """Normalized edit similarity of two strings in ``[0, 1]``."""
    a = (a or "").lower()
    b = (b or "").lower()
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return SequenceMatcher(None, a, b).ratio()


@lru_cache(maxsize=4096)
def keyword_pattern(keyword: str) -> re.Pattern:
    """Compiled matcher for a (possibly multi-word) keyword."""
    escaped = r"\s+".join(re.escape(part) for part in keyword.lower().split())
    if len(keyword) <= WHOLE_WORD_MAX_LENGTH:
        return re.compile(rf"\b{escaped}\b")
    return re.compile(rf"\b{escaped}")


def contains_keyword(text: str, keyword: str) -> bool:
    return keyword_pattern(keyword).search(normalize_text(text)) is not None


def matched_keywords(text: str, keywords: Iterable[str]) -> List[str]:
    normalized = normalize_text(text)
    return [k for k in keywords if keyword_pattern(k).search(normalized)]
