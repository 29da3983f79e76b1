"""Suggestion pipeline and candidate scorers."""

from label_engine.suggestions.pipeline import GenerateResult, ResolutionResult, SuggestionPipeline
from label_engine.suggestions.scoring import (
    FuzzyScorer,
    LabelCandidate,
    ScoredCandidate,
    SubstringScorer,
    SuggestionScorer,
)

__all__ = [
    "FuzzyScorer",
    "GenerateResult",
    "LabelCandidate",
    "ResolutionResult",
    "ScoredCandidate",
    "SubstringScorer",
    "SuggestionPipeline",
    "SuggestionScorer",
]
