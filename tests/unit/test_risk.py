"""Unit tests for threatmerge.engine.risk — keyword risk scoring."""

from __future__ import annotations

import pytest

from threatmerge.engine.risk import (
    HIGH_RISK_KEYWORDS,
    LOW_RISK_KEYWORDS,
    KeywordRiskScorer,
    RiskScorer,
    calculate_risk_score,
)


class TestKeywordRiskScorer:
    def test_missing_description_scores_default(self) -> None:
        assert calculate_risk_score(None) == 50
        assert calculate_risk_score("") == 50

    def test_neutral_text_scores_default(self) -> None:
        assert calculate_risk_score("The widget renders a chart.") == 50

    def test_high_risk_keywords_raise_score(self) -> None:
        # critical, remote, execution
        assert calculate_risk_score("Critical remote code execution") == 65

    def test_low_risk_keywords_lower_score(self) -> None:
        # minor, informational
        assert calculate_risk_score("Minor informational issue") == 40

    def test_keyword_in_both_lists_nets_zero(self) -> None:
        assert "disclosure" in HIGH_RISK_KEYWORDS and "disclosure" in LOW_RISK_KEYWORDS
        assert calculate_risk_score("disclosure") == 50

    def test_repeated_keyword_counts_once(self) -> None:
        assert calculate_risk_score("critical critical critical") == 55

    def test_match_is_case_insensitive(self) -> None:
        assert calculate_risk_score("HIGH") == 55

    def test_clamped_to_maximum(self) -> None:
        scorer = KeywordRiskScorer(step=60)
        assert scorer.score("critical") == 100

    def test_clamped_to_minimum(self) -> None:
        scorer = KeywordRiskScorer(step=60)
        assert scorer.score("minor") == 1

    @pytest.mark.parametrize(
        "text",
        [
            " ".join(HIGH_RISK_KEYWORDS),
            " ".join(LOW_RISK_KEYWORDS),
            "x" * 10_000,
            "💥 critical breach 💥",
            "\n\t",
        ],
    )
    def test_score_always_in_range(self, text: str) -> None:
        assert 1 <= calculate_risk_score(text) <= 100

    def test_satisfies_protocol(self) -> None:
        assert isinstance(KeywordRiskScorer(), RiskScorer)
