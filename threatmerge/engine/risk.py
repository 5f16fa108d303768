"""Keyword heuristic risk scoring.

Used only for threats that arrive without an explicit risk score. The scorer
is pluggable: anything satisfying RiskScorer can be handed to the
orchestrator in place of KeywordRiskScorer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from threatmerge.constants import (
    RISK_SCORE_DEFAULT,
    RISK_SCORE_MAX,
    RISK_SCORE_MIN,
    RISK_SCORE_STEP,
)

HIGH_RISK_KEYWORDS: tuple[str, ...] = (
    "critical",
    "severe",
    "high",
    "dangerous",
    "significant",
    "major",
    "sensitive data",
    "personal data",
    "financial",
    "authentication",
    "bypass",
    "privilege",
    "escalation",
    "remote",
    "execution",
    "injection",
    "unauthorized",
    "access",
    "disclosure",
    "breach",
    "compromise",
)

# "disclosure" appears in both lists on purpose: on its own it nets to zero.
LOW_RISK_KEYWORDS: tuple[str, ...] = (
    "low",
    "minor",
    "minimal",
    "limited",
    "small",
    "unlikely",
    "rare",
    "informational",
    "disclosure",
    "non-sensitive",
    "public",
    "temporary",
)


@runtime_checkable
class RiskScorer(Protocol):
    def score(self, description: Optional[str]) -> int:
        """Risk score in [1, 100] for a threat description."""
        ...


def clamp_score(value: int) -> int:
    return max(RISK_SCORE_MIN, min(RISK_SCORE_MAX, value))


@dataclass(frozen=True)
class KeywordRiskScorer:
    """Starts at 50, +5 per high-risk keyword present, -5 per low-risk keyword present.

    Matching is a case-insensitive substring test, once per keyword; a
    keyword repeated in the text counts once. The result is clamped to [1, 100].
    """

    high_risk_keywords: tuple[str, ...] = HIGH_RISK_KEYWORDS
    low_risk_keywords: tuple[str, ...] = LOW_RISK_KEYWORDS
    base_score: int = RISK_SCORE_DEFAULT
    step: int = RISK_SCORE_STEP

    def score(self, description: Optional[str]) -> int:
        if not description:
            return self.base_score
        text = description.lower()
        score = self.base_score
        score += self.step * sum(1 for keyword in self.high_risk_keywords if keyword in text)
        score -= self.step * sum(1 for keyword in self.low_risk_keywords if keyword in text)
        return clamp_score(score)


DEFAULT_SCORER = KeywordRiskScorer()


def calculate_risk_score(description: Optional[str]) -> int:
    """score() with the default keyword lists."""
    return DEFAULT_SCORER.score(description)
