"""Candidate scoring for the suggestion pipeline.

A scorer looks at one vocabulary label and one entity's text and returns a
confidence in [0, 1] plus the reasoning behind it. The pipeline applies
the exclusion rules and the confidence floor, so scorers stay pure and
deterministic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from rapidfuzz import fuzz

from label_engine.entities import EntityText
from label_engine.models.enums import LabelKind
from label_engine.utils.text import contains_text, normalize_label


@dataclass(frozen=True)
class LabelCandidate:
    """A vocabulary label offered to a scorer."""

    slug: str
    name: str
    kind: LabelKind
    description: str | None = None
    aliases: tuple[str, ...] = ()

    def terms(self) -> list[str]:
        """Spellings to look for in entity text: name, slug as words, aliases."""
        seen: list[str] = []
        for term in (self.name, self.slug.replace("_", " "), *self.aliases):
            term = term.strip()
            if term and term.casefold() not in (t.casefold() for t in seen):
                seen.append(term)
        return seen


@dataclass(frozen=True)
class ScoredCandidate:
    """Scorer output for one label."""

    label: str
    kind: LabelKind
    confidence: float
    relevance: float = 0.0
    reasoning: str | None = None
    supporting_data: dict[str, Any] = field(default_factory=dict)


class SuggestionScorer(Protocol):
    """Scores one candidate label against an entity's text."""

    name: str

    def score(self, text: EntityText, candidate: LabelCandidate) -> ScoredCandidate: ...


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _token_coverage(text: EntityText, candidate: LabelCandidate) -> float:
    """Share of the label's slug tokens present in the entity text."""
    tokens = [t for t in candidate.slug.split("_") if t]
    if not tokens:
        return 0.0
    words = set(normalize_label(f"{text.name or ''} {text.description or ''}").split("_"))
    return sum(1 for t in tokens if t in words) / len(tokens)


class SubstringScorer:
    """Case-insensitive substring matching of label terms.

    Confidence ladder:
    - any term found in the entity name        → 0.9
    - any term found in the entity description → 0.7
    - otherwise                                → 0.3
    """

    name = "substring"

    NAME_HIT = 0.9
    DESCRIPTION_HIT = 0.7
    NO_HIT = 0.3

    def score(self, text: EntityText, candidate: LabelCandidate) -> ScoredCandidate:
        terms = candidate.terms()
        name_hit = next((t for t in terms if contains_text(text.name, t)), None)
        description_hit = next((t for t in terms if contains_text(text.description, t)), None)

        if name_hit is not None:
            confidence, reasoning, matched = self.NAME_HIT, "label found in entity name", name_hit
        elif description_hit is not None:
            confidence, reasoning, matched = (
                self.DESCRIPTION_HIT,
                "label found in entity description",
                description_hit,
            )
        else:
            confidence, reasoning, matched = self.NO_HIT, "no textual match", None

        return ScoredCandidate(
            label=candidate.slug,
            kind=candidate.kind,
            confidence=confidence,
            relevance=round(_token_coverage(text, candidate), 2),
            reasoning=reasoning,
            supporting_data={"matched_term": matched} if matched else {},
        )


class FuzzyScorer:
    """RapidFuzz similarity between label terms and entity text.

    The name is scored with partial_ratio, the description with
    token_set_ratio scaled by description_weight. The best term wins.
    """

    name = "fuzzy"

    def __init__(self, description_weight: float = 0.8) -> None:
        self.description_weight = description_weight

    def score(self, text: EntityText, candidate: LabelCandidate) -> ScoredCandidate:
        name = (text.name or "").casefold()
        description = (text.description or "").casefold()

        best = 0.0
        best_term: str | None = None
        best_field: str | None = None
        for term in candidate.terms():
            needle = term.casefold()
            name_score = fuzz.partial_ratio(needle, name) / 100 if name else 0.0
            description_score = (
                fuzz.token_set_ratio(needle, description) / 100 * self.description_weight
                if description
                else 0.0
            )
            for field_name, value in (("name", name_score), ("description", description_score)):
                if value > best:
                    best, best_term, best_field = value, term, field_name

        confidence = round(clamp(best), 2)
        reasoning = (
            f"fuzzy {best_field} match on {best_term!r}" if best_term is not None else "no textual match"
        )
        return ScoredCandidate(
            label=candidate.slug,
            kind=candidate.kind,
            confidence=confidence,
            relevance=round(_token_coverage(text, candidate), 2),
            reasoning=reasoning,
            supporting_data={"matched_term": best_term, "field": best_field} if best_term else {},
        )
