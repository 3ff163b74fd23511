from __future__ import annotations

import re
from typing import Optional, Set

from boilerhub.storage.models import (
    MATCH_CONTAINS,
    MATCH_EXACT,
    MATCH_FUZZY,
    MATCH_STARTS_WITH,
    Boilerplate,
)

_WORD_RE = re.compile(r"[0-9a-z]+")


def trigrams(text: str) -> Set[str]:
    """Trigram set of ``text`` the way pg_trgm builds it.

    Each lower-cased alphanumeric word is padded with two leading spaces and one
    trailing space before being cut into trigrams.
    """
    grams: Set[str] = set()
    for word in _WORD_RE.findall((text or "").lower()):
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            grams.add(padded[i : i + 3])
    return grams


def trigram_similarity(left: str, right: str) -> float:
    """Jaccard similarity of trigram sets, matching ``pg_trgm.similarity``."""
    a = trigrams(left)
    b = trigrams(right)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def relevance_score(item: Boilerplate, query: str) -> float:
    return max(
        trigram_similarity(item.title, query),
        trigram_similarity(item.description or "", query),
    )


def matches_query(
    item: Boilerplate, query: str, match_mode: str, min_score: float
) -> Optional[float]:
    """Return the relevance score if ``item`` matches, else ``None``."""
    needle = query.lower()
    title = item.title.lower()
    description = (item.description or "").lower()
    if match_mode == MATCH_CONTAINS:
        matched = needle in title or needle in description
    elif match_mode == MATCH_EXACT:
        matched = title == needle
    elif match_mode == MATCH_STARTS_WITH:
        matched = title.startswith(needle)
    elif match_mode == MATCH_FUZZY:
        score = relevance_score(item, query)
        return score if score >= min_score else None
    else:
        raise ValueError(f"unsupported match mode: {match_mode}")
    return relevance_score(item, query) if matched else None
