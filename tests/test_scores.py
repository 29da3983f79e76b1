"""Tests for derived assignment scores."""

from __future__ import annotations

import pytest

from label_engine.models.assignment import Assignment
from label_engine.models.enums import LabelKind
from label_engine.services.scores import (
    CATEGORY_WEIGHTS,
    TAG_WEIGHTS,
    ScoreCalculator,
    UsageCounters,
    compute_scores,
)


class TestComputeScores:
    def test_no_usage(self) -> None:
        scores = compute_scores(UsageCounters(), confidence=0.8)
        assert (scores.performance, scores.relevance, scores.popularity) == (0.0, 40.0, 0.0)

    def test_zero_views_count_as_one(self) -> None:
        scores = compute_scores(UsageCounters(clicks=2), confidence=1.0)
        assert scores.performance == 50.0

    def test_category_weights(self) -> None:
        counters = UsageCounters(clicks=1, views=10, searches=5, conversions=2)
        tag = compute_scores(counters, confidence=1.0, weights=TAG_WEIGHTS)
        category = compute_scores(counters, confidence=1.0, weights=CATEGORY_WEIGHTS)
        # (.3 + 2 + 1) / 10 * 100; searches carry no category weight
        assert category.performance == 33.0
        # (.25 + 1.5 + 1.75 + .5) / 10 * 100
        assert tag.performance == 40.0

    @pytest.mark.parametrize(
        ("density", "expected"),
        [(0.0, 25.0), (2.0, 35.0), (10.0, 75.0), (40.0, 75.0), (-3.0, 25.0)],
    )
    def test_relevance_caps_density(self, density: float, expected: float) -> None:
        assert compute_scores(UsageCounters(), confidence=0.5, keyword_density=density).relevance == expected

    def test_popularity_is_logarithmic(self) -> None:
        assert compute_scores(UsageCounters(searches=9), confidence=0.0).popularity == 20.0
        assert compute_scores(UsageCounters(searches=99, clicks=9), confidence=0.0).popularity == 55.0

    def test_deterministic(self) -> None:
        counters = UsageCounters(clicks=3, views=7, searches=1, conversions=1)
        assert compute_scores(counters, confidence=0.7) == compute_scores(counters, confidence=0.7)

    def test_rounded_to_two_decimals(self) -> None:
        scores = compute_scores(UsageCounters(clicks=1, views=3), confidence=1 / 3)
        assert scores.performance == 23.33
        assert scores.relevance == 16.67


class TestScoreCalculator:
    def test_recompute_writes_scores(self) -> None:
        assignment = Assignment(
            kind=LabelKind.CATEGORY,
            confidence=1.0,
            keyword_density=1.0,
            click_count=0,
            view_count=0,
            search_count=0,
            conversion_count=1,
        )

        scores = ScoreCalculator().recompute(assignment)

        assert assignment.performance_score == scores.performance == 50.0
        assert assignment.relevance_score == scores.relevance == 55.0
        assert assignment.popularity_score == scores.popularity == 0.0
