"""Suggestion pipeline: scored, non-binding candidate assignments.

This module implements the suggestion lifecycle:
1. generate() scores active vocabulary labels against an entity's text
2. Labels already assigned, already pending, or rejected from the same
   source are never offered again
3. Candidates below the confidence floor are discarded; the rest are
   stored as pending with a default 30-day expiry
4. resolve() accepts (promoting into the ledger) or rejects a suggestion
5. sweep() expires pending suggestions past their expiry

Every status transition is a compare-and-set on status = pending, so a
suggestion is resolved at most once no matter how many callers race.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from label_engine.config import settings
from label_engine.entities import EntityRef, EntityText
from label_engine.exceptions import ValidationError
from label_engine.models.enums import AssignmentSource, Decision, LabelKind, SuggestionStatus
from label_engine.models.suggestion import Suggestion
from label_engine.results import Failure
from label_engine.services.labels import LabelService
from label_engine.services.ledger import AssignmentLedger
from label_engine.suggestions.scoring import (
    LabelCandidate,
    ScoredCandidate,
    SubstringScorer,
    SuggestionScorer,
    clamp,
)
from label_engine.utils.clock import as_utc, utcnow
from label_engine.utils.text import normalize_label

logger = logging.getLogger(__name__)

FEEDBACK_SCORES = frozenset({-1, 0, 1})


@dataclass
class GenerateResult:
    """Result of SuggestionPipeline.generate()."""

    suggestion_ids: list[UUID] = field(default_factory=list)
    failures: list[Failure] = field(default_factory=list)


@dataclass
class ResolutionResult:
    """Result of resolving a suggestion.

    applied is False when the suggestion was unknown or no longer pending;
    in that case nothing changed.
    """

    applied: bool
    suggestion_id: UUID
    status: SuggestionStatus | None = None
    assignment_id: UUID | None = None
    reason: str | None = None


class SuggestionPipeline:
    """Service for generating, proposing, resolving and expiring suggestions.

    Usage:
        async with AsyncSession(engine) as session:
            pipeline = SuggestionPipeline(session, AssignmentLedger(session))
            result = await pipeline.generate(ref, EntityText(name="Red Cotton Shirt"))
            await session.commit()
    """

    def __init__(
        self,
        session: AsyncSession,
        ledger: AssignmentLedger,
        scorer: SuggestionScorer | None = None,
        *,
        min_confidence: float | None = None,
        ttl_days: int | None = None,
    ) -> None:
        """Initialize the pipeline with a session, the ledger and a scorer."""
        self._session = session
        self._ledger = ledger
        self._scorer: SuggestionScorer = scorer or SubstringScorer()
        self._min_confidence = (
            settings.suggestion_min_confidence if min_confidence is None else min_confidence
        )
        self._ttl = timedelta(days=settings.suggestion_ttl_days if ttl_days is None else ttl_days)

    # -------------------------------------------------------------------------
    # Exclusions
    # -------------------------------------------------------------------------

    async def _excluded_labels(
        self,
        ref: EntityRef,
        kind: LabelKind,
        source: str,
        language: str,
    ) -> set[str]:
        """Labels that must not be offered: assigned, pending, or rejected from this source."""
        assigned = await self._ledger.list_assignments(
            ref, kind=kind, visible_only=False, language=language
        )
        excluded = {a.label for a in assigned if a.is_active}

        stmt = select(Suggestion.label, Suggestion.status, Suggestion.source).where(
            Suggestion.tenant_id == ref.tenant_id,
            Suggestion.entity_id == ref.entity_id,
            Suggestion.kind == kind,
            Suggestion.status.in_([SuggestionStatus.PENDING, SuggestionStatus.REJECTED]),
        )
        for label, status, suggestion_source in (await self._session.execute(stmt)).all():
            if status == SuggestionStatus.PENDING or suggestion_source == source:
                excluded.add(label)
        return excluded

    def _new_suggestion(
        self,
        ref: EntityRef,
        scored: ScoredCandidate,
        *,
        source: str,
        language: str,
        now: datetime,
    ) -> Suggestion:
        return Suggestion(
            suggestion_id=uuid4(),
            tenant_id=ref.tenant_id,
            entity_id=ref.entity_id,
            label=scored.label,
            kind=scored.kind,
            language=language,
            source=source,
            confidence=clamp(scored.confidence),
            relevance=scored.relevance,
            reasoning=scored.reasoning,
            supporting_data=dict(scored.supporting_data),
            status=SuggestionStatus.PENDING,
            created_at=now,
            expires_at=now + self._ttl,
        )

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    async def generate(
        self,
        ref: EntityRef,
        text: EntityText,
        *,
        source: str | None = None,
        max_suggestions: int | None = None,
        kinds: list[LabelKind] | None = None,
        language: str | None = None,
        now: datetime | None = None,
    ) -> GenerateResult:
        """Score the tenant's vocabulary against an entity and store the best candidates.

        Args:
            ref: The entity.
            text: The entity's name/description.
            source: Suggestion source (default: the scorer's name).
            max_suggestions: Cap on stored suggestions (default from settings).
            kinds: Label kinds to consider (default: tag and category).
            language: Suggestion language (default: settings.default_language).
            now: Creation time (default: current time).

        Returns:
            GenerateResult with the new suggestion ids, best first.
        """
        source = source or self._scorer.name
        limit = settings.suggestion_max_default if max_suggestions is None else max_suggestions
        language = language or settings.default_language
        now = as_utc(now) if now else utcnow()
        result = GenerateResult()
        if limit <= 0:
            return result

        labels = LabelService(self._session)
        scored: list[ScoredCandidate] = []
        for kind in kinds or [LabelKind.TAG, LabelKind.CATEGORY]:
            excluded = await self._excluded_labels(ref, kind, source, language)
            for label in await labels.list_labels(ref.tenant_id, kind=kind):
                if label.slug in excluded:
                    continue
                candidate = LabelCandidate(
                    slug=label.slug,
                    name=label.name,
                    kind=label.kind,
                    description=label.description,
                    aliases=tuple(label.aliases or ()),
                )
                try:
                    candidate_score = self._scorer.score(text, candidate)
                except Exception as exc:
                    logger.exception("Scorer %s failed on %s for %s", self._scorer.name, label.slug, ref)
                    result.failures.append(Failure.from_exception(label.slug, exc))
                    continue
                if clamp(candidate_score.confidence) >= self._min_confidence:
                    scored.append(candidate_score)

        scored.sort(key=lambda c: (-clamp(c.confidence), c.label, c.kind.value))
        for candidate_score in scored[:limit]:
            suggestion = self._new_suggestion(
                ref, candidate_score, source=source, language=language, now=now
            )
            self._session.add(suggestion)
            result.suggestion_ids.append(suggestion.suggestion_id)
        await self._session.flush()

        logger.info(
            "Generated %d suggestions for %s (%d candidates above %.2f)",
            len(result.suggestion_ids),
            ref,
            len(scored),
            self._min_confidence,
        )
        return result

    async def propose(
        self,
        ref: EntityRef,
        label: str,
        kind: LabelKind,
        *,
        source: str,
        confidence: float,
        reasoning: str | None = None,
        supporting_data: dict[str, Any] | None = None,
        relevance: float = 0.0,
        language: str | None = None,
        now: datetime | None = None,
    ) -> Suggestion | None:
        """Store a single candidate, e.g. from a suggestion-only rule.

        Returns:
            The pending suggestion, or None when the label is excluded or
            below the confidence floor.
        """
        slug = normalize_label(label)
        language = language or settings.default_language
        if not slug:
            raise ValidationError({"label": "label must contain at least one letter or digit"})
        if clamp(confidence) < self._min_confidence:
            return None
        if slug in await self._excluded_labels(ref, kind, source, language):
            return None

        suggestion = self._new_suggestion(
            ref,
            ScoredCandidate(
                label=slug,
                kind=kind,
                confidence=confidence,
                relevance=relevance,
                reasoning=reasoning,
                supporting_data=supporting_data or {},
            ),
            source=source,
            language=language,
            now=as_utc(now) if now else utcnow(),
        )
        self._session.add(suggestion)
        await self._session.flush()
        return suggestion

    # -------------------------------------------------------------------------
    # Review
    # -------------------------------------------------------------------------

    async def get(self, suggestion_id: UUID) -> Suggestion | None:
        """Find a suggestion by id."""
        return await self._session.get(Suggestion, suggestion_id)

    async def pending_for(self, ref: EntityRef, kind: LabelKind | None = None) -> list[Suggestion]:
        """Pending suggestions of an entity, best first."""
        stmt = select(Suggestion).where(
            Suggestion.tenant_id == ref.tenant_id,
            Suggestion.entity_id == ref.entity_id,
            Suggestion.status == SuggestionStatus.PENDING,
        )
        if kind is not None:
            stmt = stmt.where(Suggestion.kind == kind)
        stmt = stmt.order_by(Suggestion.confidence.desc(), Suggestion.label)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def resolve(
        self,
        suggestion_id: UUID,
        decision: Decision | str,
        *,
        feedback_score: int | None = None,
        comment: str | None = None,
        reviewer: str | None = None,
        now: datetime | None = None,
    ) -> ResolutionResult:
        """Accept or reject a pending suggestion.

        Accepting promotes the label into the ledger with source
        "suggestion" and links the new assignment. An entity that already
        holds the label keeps its existing assignment.

        Args:
            suggestion_id: The suggestion.
            decision: accept or reject.
            feedback_score: Optional reviewer feedback in {-1, 0, 1}.
            comment: Optional reviewer comment.
            reviewer: Optional reviewer id, recorded as the history actor.
            now: Review time (default: current time).

        Returns:
            ResolutionResult; applied is False for unknown or already
            resolved suggestions.

        Raises:
            ValidationError: Unknown decision or feedback score.
        """
        try:
            decision = Decision(decision)
        except ValueError:
            raise ValidationError({"decision": "must be accept or reject"}) from None
        if feedback_score is not None and feedback_score not in FEEDBACK_SCORES:
            raise ValidationError({"feedback_score": "must be -1, 0 or 1"})

        suggestion = await self.get(suggestion_id)
        if suggestion is None:
            return ResolutionResult(applied=False, suggestion_id=suggestion_id, reason="not found")

        new_status = (
            SuggestionStatus.ACCEPTED if decision is Decision.ACCEPT else SuggestionStatus.REJECTED
        )
        stmt = (
            update(Suggestion)
            .where(
                Suggestion.suggestion_id == suggestion_id,
                Suggestion.status == SuggestionStatus.PENDING,
            )
            .values(
                status=new_status,
                feedback_score=feedback_score,
                feedback_comment=comment,
                reviewed_by=reviewer,
                reviewed_at=as_utc(now) if now else utcnow(),
            )
        )
        cursor = await self._session.execute(stmt)
        await self._session.refresh(suggestion)
        if cursor.rowcount == 0:
            return ResolutionResult(
                applied=False,
                suggestion_id=suggestion_id,
                status=suggestion.status,
                assignment_id=suggestion.assignment_id,
                reason=f"already {suggestion.status.value}",
            )

        assignment_id: UUID | None = None
        if new_status is SuggestionStatus.ACCEPTED:
            ref = EntityRef(suggestion.tenant_id, suggestion.entity_id)
            assignment = await self._ledger.find(ref, suggestion.label, suggestion.kind, suggestion.language)
            if assignment is None or not assignment.is_active:
                assignment = await self._ledger.assign(
                    ref,
                    suggestion.label,
                    suggestion.kind,
                    source=AssignmentSource.SUGGESTION,
                    confidence=suggestion.confidence,
                    language=suggestion.language,
                    actor=f"user:{reviewer}" if reviewer else f"suggestion:{suggestion_id}",
                    reason=f"accepted suggestion {suggestion_id} from {suggestion.source}",
                )
            assignment_id = assignment.assignment_id
            suggestion.assignment_id = assignment_id
            await self._session.flush()

        logger.info(
            "Suggestion %s %s:%s for %s/%s → %s",
            suggestion_id,
            suggestion.kind.value,
            suggestion.label,
            suggestion.tenant_id,
            suggestion.entity_id,
            new_status.value,
        )
        return ResolutionResult(
            applied=True,
            suggestion_id=suggestion_id,
            status=new_status,
            assignment_id=assignment_id,
        )

    # -------------------------------------------------------------------------
    # Expiry
    # -------------------------------------------------------------------------

    async def sweep(self, now: datetime | None = None, *, tenant_id: str | None = None) -> list[UUID]:
        """Expire every pending suggestion whose expires_at has passed.

        Returns:
            Ids of the suggestions expired by this call.
        """
        now = as_utc(now) if now else utcnow()
        stmt = select(Suggestion.suggestion_id).where(
            Suggestion.status == SuggestionStatus.PENDING,
            Suggestion.expires_at <= now,
        )
        if tenant_id is not None:
            stmt = stmt.where(Suggestion.tenant_id == tenant_id)
        due = list((await self._session.execute(stmt)).scalars().all())
        if not due:
            return []

        expired: list[UUID] = []
        for suggestion_id in due:
            cursor = await self._session.execute(
                update(Suggestion)
                .where(
                    Suggestion.suggestion_id == suggestion_id,
                    Suggestion.status == SuggestionStatus.PENDING,
                )
                .values(status=SuggestionStatus.EXPIRED)
            )
            if cursor.rowcount:
                expired.append(suggestion_id)

        logger.info("Expired %d pending suggestions", len(expired))
        return expired
