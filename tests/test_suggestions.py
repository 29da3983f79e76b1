"""Tests for suggestion scoring and the suggestion pipeline."""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from label_engine.entities import EntityRef, EntityText
from label_engine.exceptions import ValidationError
from label_engine.models.enums import AssignmentSource, Decision, LabelKind, SuggestionStatus
from label_engine.services.labels import LabelService
from label_engine.services.ledger import AssignmentLedger
from label_engine.suggestions.pipeline import SuggestionPipeline
from label_engine.suggestions.scoring import (
    FuzzyScorer,
    LabelCandidate,
    ScoredCandidate,
    SubstringScorer,
)
from label_engine.utils.clock import utcnow
from label_engine.utils.text import normalize_label

SHIRT = EntityText(name="Red Cotton Shirt", description="A breathable summer shirt")


def candidate(name: str, **kwargs) -> LabelCandidate:
    kwargs.setdefault("kind", LabelKind.TAG)
    return LabelCandidate(slug=normalize_label(name), name=name, **kwargs)


class TestSubstringScorer:
    @pytest.mark.parametrize(
        ("label", "confidence"),
        [("Red", 0.9), ("Summer", 0.7), ("Wool", 0.3)],
    )
    def test_confidence_ladder(self, label: str, confidence: float) -> None:
        assert SubstringScorer().score(SHIRT, candidate(label)).confidence == confidence

    def test_aliases_match(self) -> None:
        scored = SubstringScorer().score(SHIRT, candidate("Crimson", aliases=("red",)))
        assert scored.confidence == 0.9
        assert scored.supporting_data == {"matched_term": "red"}

    def test_relevance_is_token_coverage(self) -> None:
        assert SubstringScorer().score(SHIRT, candidate("Cotton Shirt")).relevance == 1.0
        assert SubstringScorer().score(SHIRT, candidate("Cotton Dress")).relevance == 0.5

    def test_empty_text(self) -> None:
        assert SubstringScorer().score(EntityText(), candidate("Red")).confidence == 0.3


class TestFuzzyScorer:
    def test_exact_name_match_is_certain(self) -> None:
        scored = FuzzyScorer().score(SHIRT, candidate("Cotton"))
        assert scored.confidence == 1.0
        assert scored.supporting_data["field"] == "name"

    def test_bounded(self) -> None:
        for label in ("Red", "Linen", "Shirts", "Wool Coat"):
            assert 0.0 <= FuzzyScorer().score(SHIRT, candidate(label)).confidence <= 1.0

    def test_no_text(self) -> None:
        scored = FuzzyScorer().score(EntityText(), candidate("Red"))
        assert scored.confidence == 0.0
        assert scored.reasoning == "no textual match"


class _FixedScorer:
    """Scores every candidate with the same (possibly out-of-range) confidence."""

    name = "fixed"

    def __init__(self, confidence: float) -> None:
        self.confidence = confidence

    def score(self, text: EntityText, candidate: LabelCandidate) -> ScoredCandidate:
        return ScoredCandidate(label=candidate.slug, kind=candidate.kind, confidence=self.confidence)


class _BrokenScorer:
    name = "broken"

    def score(self, text: EntityText, candidate: LabelCandidate) -> ScoredCandidate:
        if candidate.slug == "red":
            raise RuntimeError("model unavailable")
        return ScoredCandidate(label=candidate.slug, kind=candidate.kind, confidence=0.8)


@pytest.fixture
def ledger(db_session: AsyncSession) -> AssignmentLedger:
    return AssignmentLedger(db_session)


@pytest.fixture
def pipeline(db_session: AsyncSession, ledger: AssignmentLedger) -> SuggestionPipeline:
    return SuggestionPipeline(db_session, ledger)


@pytest.fixture
async def vocabulary(make_label) -> None:
    await make_label("Red")
    await make_label("Summer")
    await make_label("Wool")
    await make_label("Shirts", kind=LabelKind.CATEGORY, aliases=["shirt"])


class TestGenerate:
    async def test_floor_and_ordering(
        self, pipeline: SuggestionPipeline, vocabulary: None, ref: EntityRef
    ) -> None:
        result = await pipeline.generate(ref, SHIRT)

        assert len(result.suggestion_ids) == 3
        pending = await pipeline.pending_for(ref)
        assert [(s.label, s.kind, s.confidence) for s in pending] == [
            ("red", LabelKind.TAG, 0.9),
            ("shirts", LabelKind.CATEGORY, 0.9),
            ("summer", LabelKind.TAG, 0.7),
        ]
        assert {s.source for s in pending} == {"substring"}
        assert all(s.status is SuggestionStatus.PENDING for s in pending)

    async def test_default_expiry(self, pipeline: SuggestionPipeline, vocabulary: None, ref: EntityRef) -> None:
        now = utcnow()
        await pipeline.generate(ref, SHIRT, now=now)
        suggestion = (await pipeline.pending_for(ref))[0]
        assert suggestion.expires_at - suggestion.created_at == timedelta(days=30)

    async def test_max_suggestions(self, pipeline: SuggestionPipeline, vocabulary: None, ref: EntityRef) -> None:
        result = await pipeline.generate(ref, SHIRT, max_suggestions=1)
        assert len(result.suggestion_ids) == 1
        assert (await pipeline.pending_for(ref))[0].label == "red"
        assert (await pipeline.generate(ref, SHIRT, max_suggestions=0)).suggestion_ids == []

    async def test_kinds_filter(self, pipeline: SuggestionPipeline, vocabulary: None, ref: EntityRef) -> None:
        await pipeline.generate(ref, SHIRT, kinds=[LabelKind.CATEGORY])
        assert [s.label for s in await pipeline.pending_for(ref)] == ["shirts"]

    async def test_exclusions(
        self,
        pipeline: SuggestionPipeline,
        ledger: AssignmentLedger,
        vocabulary: None,
        ref: EntityRef,
    ) -> None:
        await ledger.assign(ref, "red", LabelKind.TAG)
        first = await pipeline.generate(ref, SHIRT)
        assert {(await pipeline.get(i)).label for i in first.suggestion_ids} == {"shirts", "summer"}

        # Pending labels are not offered again
        assert (await pipeline.generate(ref, SHIRT)).suggestion_ids == []

        summer = next(s for s in await pipeline.pending_for(ref) if s.label == "summer")
        await pipeline.resolve(summer.suggestion_id, Decision.REJECT)

        # Rejected from the same source stays excluded, another source may offer it
        assert (await pipeline.generate(ref, SHIRT)).suggestion_ids == []
        other = await pipeline.generate(ref, SHIRT, source="catalog-import")
        assert [(await pipeline.get(i)).label for i in other.suggestion_ids] == ["summer"]

    async def test_confidence_is_clamped(
        self, db_session: AsyncSession, ledger: AssignmentLedger, vocabulary: None, ref: EntityRef
    ) -> None:
        pipeline = SuggestionPipeline(db_session, ledger, _FixedScorer(1.7))
        await pipeline.generate(ref, SHIRT)
        assert {s.confidence for s in await pipeline.pending_for(ref)} == {1.0}

    async def test_scorer_failure_is_reported(
        self, db_session: AsyncSession, ledger: AssignmentLedger, vocabulary: None, ref: EntityRef
    ) -> None:
        pipeline = SuggestionPipeline(db_session, ledger, _BrokenScorer())

        result = await pipeline.generate(ref, SHIRT)

        assert [(f.item, f.error) for f in result.failures] == [("red", "RuntimeError")]
        assert len(result.suggestion_ids) == 3

    async def test_inactive_labels_ignored(
        self, db_session: AsyncSession, pipeline: SuggestionPipeline, vocabulary: None, ref: EntityRef
    ) -> None:
        await LabelService(db_session).deactivate_label("store-1", LabelKind.TAG, "red")
        await pipeline.generate(ref, SHIRT)
        assert "red" not in {s.label for s in await pipeline.pending_for(ref)}


class TestPropose:
    async def test_floor_and_exclusion(self, pipeline: SuggestionPipeline, ref: EntityRef) -> None:
        assert await pipeline.propose(ref, "Red", LabelKind.TAG, source="rule:r", confidence=0.4) is None

        suggestion = await pipeline.propose(ref, "Red", LabelKind.TAG, source="rule:r", confidence=0.75)
        assert suggestion is not None and suggestion.label == "red"

        assert await pipeline.propose(ref, "red", LabelKind.TAG, source="rule:r", confidence=0.9) is None

    async def test_empty_label(self, pipeline: SuggestionPipeline, ref: EntityRef) -> None:
        with pytest.raises(ValidationError):
            await pipeline.propose(ref, "--", LabelKind.TAG, source="rule:r", confidence=0.9)


class TestResolve:
    async def test_accept_promotes(
        self, pipeline: SuggestionPipeline, ledger: AssignmentLedger, ref: EntityRef
    ) -> None:
        suggestion = await pipeline.propose(ref, "red", LabelKind.TAG, source="substring", confidence=0.9)

        result = await pipeline.resolve(
            suggestion.suggestion_id, "accept", feedback_score=1, comment="spot on", reviewer="42"
        )

        assert result.applied
        assert result.status is SuggestionStatus.ACCEPTED
        assignment = await ledger.get(result.assignment_id)
        assert assignment.source is AssignmentSource.SUGGESTION
        assert assignment.confidence == 0.9
        assert suggestion.assignment_id == assignment.assignment_id
        assert (suggestion.feedback_score, suggestion.feedback_comment, suggestion.reviewed_by) == (
            1,
            "spot on",
            "42",
        )
        assert suggestion.reviewed_at is not None

    async def test_accept_links_existing_assignment(
        self, pipeline: SuggestionPipeline, ledger: AssignmentLedger, ref: EntityRef
    ) -> None:
        suggestion = await pipeline.propose(ref, "red", LabelKind.TAG, source="substring", confidence=0.9)
        manual = await ledger.assign(ref, "red", LabelKind.TAG)

        result = await pipeline.resolve(suggestion.suggestion_id, Decision.ACCEPT)

        assert result.assignment_id == manual.assignment_id
        assert manual.source is AssignmentSource.MANUAL

    async def test_reject(self, pipeline: SuggestionPipeline, ledger: AssignmentLedger, ref: EntityRef) -> None:
        suggestion = await pipeline.propose(ref, "red", LabelKind.TAG, source="substring", confidence=0.9)

        result = await pipeline.resolve(suggestion.suggestion_id, Decision.REJECT, feedback_score=-1)

        assert result.applied and result.status is SuggestionStatus.REJECTED
        assert result.assignment_id is None
        assert await ledger.list_assignments(ref) == []

    async def test_second_resolve_is_noop(self, pipeline: SuggestionPipeline, ref: EntityRef) -> None:
        suggestion = await pipeline.propose(ref, "red", LabelKind.TAG, source="substring", confidence=0.9)
        await pipeline.resolve(suggestion.suggestion_id, Decision.REJECT, comment="no")

        again = await pipeline.resolve(suggestion.suggestion_id, Decision.ACCEPT, comment="yes")

        assert not again.applied
        assert again.status is SuggestionStatus.REJECTED
        assert again.reason == "already rejected"
        assert suggestion.feedback_comment == "no"

    async def test_unknown_and_invalid(self, pipeline: SuggestionPipeline, ref: EntityRef) -> None:
        missing = await pipeline.resolve(uuid4(), Decision.ACCEPT)
        assert (missing.applied, missing.reason) == (False, "not found")

        suggestion = await pipeline.propose(ref, "red", LabelKind.TAG, source="substring", confidence=0.9)
        with pytest.raises(ValidationError):
            await pipeline.resolve(suggestion.suggestion_id, "maybe")
        with pytest.raises(ValidationError):
            await pipeline.resolve(suggestion.suggestion_id, Decision.ACCEPT, feedback_score=5)


class TestSweep:
    async def test_sweep_then_resolve(
        self,
        db_session: AsyncSession,
        pipeline: SuggestionPipeline,
        ledger: AssignmentLedger,
        ref: EntityRef,
    ) -> None:
        created = utcnow() - timedelta(days=31)
        stale = await pipeline.propose(
            ref, "red", LabelKind.TAG, source="substring", confidence=0.9, now=created
        )
        fresh = await pipeline.propose(ref, "blue", LabelKind.TAG, source="substring", confidence=0.9)

        assert await pipeline.sweep() == [stale.suggestion_id]
        await db_session.refresh(stale)
        assert stale.status is SuggestionStatus.EXPIRED
        assert fresh.status is SuggestionStatus.PENDING

        result = await pipeline.resolve(stale.suggestion_id, Decision.ACCEPT)

        assert not result.applied
        assert result.reason == "already expired"
        assert await ledger.list_assignments(ref) == []
        assert await pipeline.sweep() == []
