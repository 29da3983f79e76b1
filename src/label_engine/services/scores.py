"""Derived assignment scores.

All three scores are pure functions of an assignment's counters,
confidence and keyword density:

- performance: weighted interactions per view, x100. Zero views count as one.
- relevance:   confidence x 50 + min(keyword_density, 10) x 5.
- popularity:  log10(1 + searches) x 20 + log10(1 + clicks) x 15, so the
               first interactions move it quickly and later ones less.

Results are rounded to two decimals. last_interaction_at is bookkeeping
kept outside the formulas.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from label_engine.models.assignment import Assignment
from label_engine.models.enums import LabelKind


@dataclass(frozen=True)
class ScoreWeights:
    """Per-counter weights for performance_score."""

    click: float
    view: float
    search: float
    conversion: float


TAG_WEIGHTS = ScoreWeights(click=0.25, view=0.15, search=0.35, conversion=0.25)
CATEGORY_WEIGHTS = ScoreWeights(click=0.3, view=0.2, search=0.0, conversion=0.5)

WEIGHTS_BY_KIND: dict[LabelKind, ScoreWeights] = {
    LabelKind.TAG: TAG_WEIGHTS,
    LabelKind.CATEGORY: CATEGORY_WEIGHTS,
    LabelKind.METADATA: TAG_WEIGHTS,
}

MAX_KEYWORD_DENSITY = 10.0


@dataclass(frozen=True)
class UsageCounters:
    """Raw interaction counts of one assignment."""

    clicks: int = 0
    views: int = 0
    searches: int = 0
    conversions: int = 0


@dataclass(frozen=True)
class Scores:
    """Derived scores of one assignment."""

    performance: float
    relevance: float
    popularity: float


def performance_score(counters: UsageCounters, weights: ScoreWeights = TAG_WEIGHTS) -> float:
    weighted = (
        counters.clicks * weights.click
        + counters.views * weights.view
        + counters.searches * weights.search
        + counters.conversions * weights.conversion
    )
    return weighted / max(1, counters.views) * 100


def relevance_score(confidence: float, keyword_density: float = 0.0) -> float:
    density = min(max(keyword_density, 0.0), MAX_KEYWORD_DENSITY)
    return confidence * 50 + density * 5


def popularity_score(counters: UsageCounters) -> float:
    return math.log10(1 + counters.searches) * 20 + math.log10(1 + counters.clicks) * 15


def compute_scores(
    counters: UsageCounters,
    *,
    confidence: float,
    keyword_density: float = 0.0,
    weights: ScoreWeights = TAG_WEIGHTS,
) -> Scores:
    """Compute all derived scores. Deterministic for equal inputs."""
    return Scores(
        performance=round(performance_score(counters, weights), 2),
        relevance=round(relevance_score(confidence, keyword_density), 2),
        popularity=round(popularity_score(counters), 2),
    )


class ScoreCalculator:
    """Applies compute_scores() to assignment rows.

    Stateless; the ledger calls recompute() on every write, after counters or
    confidence may have changed.
    """

    def __init__(self, weights_by_kind: dict[LabelKind, ScoreWeights] | None = None) -> None:
        self._weights = weights_by_kind or WEIGHTS_BY_KIND

    def scores_for(self, assignment: Assignment) -> Scores:
        counters = UsageCounters(
            clicks=assignment.click_count or 0,
            views=assignment.view_count or 0,
            searches=assignment.search_count or 0,
            conversions=assignment.conversion_count or 0,
        )
        return compute_scores(
            counters,
            confidence=assignment.confidence,
            keyword_density=assignment.keyword_density or 0.0,
            weights=self._weights.get(assignment.kind, TAG_WEIGHTS),
        )

    def recompute(self, assignment: Assignment) -> Scores:
        """Write fresh scores onto the assignment and return them."""
        scores = self.scores_for(assignment)
        assignment.performance_score = scores.performance
        assignment.relevance_score = scores.relevance
        assignment.popularity_score = scores.popularity
        return scores
