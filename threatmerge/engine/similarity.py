"""Duplicate detection between a candidate threat and the threats already in a model.

A candidate duplicates an existing threat when any of these hold:

  1. titles are equal, ignoring case
  2. Jaccard similarity of title token sets > title_threshold (0.7)
  3. Jaccard similarity of description token sets > description_threshold (0.8),
     ignoring description tokens shorter than min_token_length

Tokens are the lower-cased pieces of a split on non-word characters.

This is a heuristic. Distinct threats with near-identical wording are merged
away and reworded duplicates survive; callers needing stricter guarantees
pre- or post-process.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from threatmerge.constants import (
    DESCRIPTION_SIMILARITY_THRESHOLD,
    MIN_DESCRIPTION_TOKEN_LENGTH,
    TITLE_SIMILARITY_THRESHOLD,
)
from threatmerge.models.threat import Threat, ThreatCandidate

_NON_WORD_RE = re.compile(r"\W+")

ThreatLike = Union[Threat, ThreatCandidate]


def tokenize(text: Optional[str], min_length: int = 1) -> frozenset[str]:
    """Lower-cased word tokens of text, dropping tokens shorter than min_length."""
    if not text:
        return frozenset()
    return frozenset(
        token for token in _NON_WORD_RE.split(text.lower()) if len(token) >= min_length
    )


def jaccard(left: frozenset[str], right: frozenset[str]) -> float:
    """|left ∩ right| / |left ∪ right|; 0.0 when both sets are empty."""
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


@dataclass(frozen=True)
class SimilarityMatcher:
    """Configurable duplicate detector. Defaults match constants.py."""

    title_threshold: float = TITLE_SIMILARITY_THRESHOLD
    description_threshold: float = DESCRIPTION_SIMILARITY_THRESHOLD
    min_token_length: int = MIN_DESCRIPTION_TOKEN_LENGTH

    def is_duplicate(self, candidate: ThreatLike, existing: Iterable[ThreatLike]) -> bool:
        """True if candidate duplicates any threat in existing."""
        return self.find_duplicate(candidate, existing) is not None

    def find_duplicate(
        self, candidate: ThreatLike, existing: Iterable[ThreatLike]
    ) -> Optional[ThreatLike]:
        """The first threat in existing that candidate duplicates, or None.

        Exact title matches are looked for across the whole list before any
        token comparison, so an exact match always wins over a fuzzy one.
        """
        existing = list(existing)
        if not existing:
            return None

        title = (candidate.title or "").strip().lower()
        if title:
            for threat in existing:
                if (threat.title or "").strip().lower() == title:
                    return threat

        title_tokens = tokenize(candidate.title)
        description_tokens = tokenize(candidate.description, self.min_token_length)

        for threat in existing:
            if title_tokens and jaccard(title_tokens, tokenize(threat.title)) > self.title_threshold:
                return threat
            if description_tokens:
                other = tokenize(threat.description, self.min_token_length)
                if jaccard(description_tokens, other) > self.description_threshold:
                    return threat
        return None


DEFAULT_MATCHER = SimilarityMatcher()


def is_duplicate(candidate: ThreatLike, existing: Iterable[ThreatLike]) -> bool:
    """is_duplicate() with the default thresholds."""
    return DEFAULT_MATCHER.is_duplicate(candidate, existing)
