"""Assignment ledger: the authoritative store of entity↔label bindings.

Every mutation goes through one write path:
1. Snapshot the row before the change
2. Apply the change (demoting any previous primary first, flushed on its own)
3. Recompute derived scores
4. Flush and append a history record from the before/after snapshots

All of it runs in the caller's session, so the ledger write and its
history record commit or roll back together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from label_engine.config import settings
from label_engine.entities import EntityRef
from label_engine.exceptions import ConflictError, NotFoundError, ValidationError
from label_engine.models.assignment import Assignment
from label_engine.models.enums import AssignmentSource, LabelKind
from label_engine.services.history import HistoryLog, snapshot_assignment
from label_engine.services.labels import LabelService
from label_engine.services.scores import ScoreCalculator
from label_engine.utils.clock import as_utc, is_expired, utcnow
from label_engine.utils.text import normalize_label

logger = logging.getLogger(__name__)

EXPIRY_ACTOR = "system:sweep"
USAGE_COLUMNS = (
    "click_count",
    "view_count",
    "search_count",
    "conversion_count",
    "usage_count",
    "last_interaction_at",
)


@dataclass(frozen=True)
class LedgerChange:
    """One assignment touched by a unit of work; fanned out to listeners after commit."""

    ref: EntityRef
    label: str
    kind: LabelKind
    assignment_id: UUID


class AssignmentLedger:
    """Service for creating, changing and querying assignments.

    The ledger collects a LedgerChange for every row it writes in `changed`;
    the engine facade reads it after commit to notify listeners.

    Usage:
        async with AsyncSession(engine) as session:
            ledger = AssignmentLedger(session)
            assignment = await ledger.assign(ref, "Shirts", LabelKind.CATEGORY,
                                             source=AssignmentSource.MANUAL, is_primary=True)
            await session.commit()
    """

    def __init__(
        self,
        session: AsyncSession,
        history: HistoryLog | None = None,
        scores: ScoreCalculator | None = None,
        *,
        primary_kinds: list[str] | None = None,
        require_known_labels: bool | None = None,
    ) -> None:
        """Initialize the ledger with a database session and collaborators."""
        self._session = session
        self._history = history or HistoryLog(session)
        self._scores = scores or ScoreCalculator()
        self._primary_kinds = set(primary_kinds if primary_kinds is not None else settings.primary_kinds)
        self._require_known_labels = (
            settings.require_known_labels if require_known_labels is None else require_known_labels
        )
        self.changed: list[LedgerChange] = []

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def get(self, assignment_id: UUID) -> Assignment | None:
        """Find an assignment by id."""
        return await self._session.get(Assignment, assignment_id)

    async def find(
        self,
        ref: EntityRef,
        label: str,
        kind: LabelKind,
        language: str | None = None,
    ) -> Assignment | None:
        """Find the assignment row for (entity, label, kind, language), active or not.

        The row is read FOR UPDATE where the backend supports it.
        """
        stmt = (
            select(Assignment)
            .where(
                Assignment.tenant_id == ref.tenant_id,
                Assignment.entity_id == ref.entity_id,
                Assignment.label == normalize_label(label),
                Assignment.kind == kind,
                Assignment.language == (language or settings.default_language),
            )
            .with_for_update()
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_primary(self, ref: EntityRef, kind: LabelKind) -> Assignment | None:
        """The current primary assignment of a kind, or None."""
        stmt = select(Assignment).where(
            Assignment.tenant_id == ref.tenant_id,
            Assignment.entity_id == ref.entity_id,
            Assignment.kind == kind,
            Assignment.is_primary.is_(True),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_assignments(
        self,
        ref: EntityRef,
        *,
        kind: LabelKind | None = None,
        visible_only: bool = True,
        language: str | None = None,
        now: datetime | None = None,
    ) -> list[Assignment]:
        """List an entity's assignments.

        Args:
            ref: The entity.
            kind: Optional filter on label kind.
            visible_only: Hide inactive, invisible and expired rows.
            language: Optional filter on language.
            now: Reference time for expiry (default: current time).

        Returns:
            Assignments ordered by (is_primary desc, display_order, label).
        """
        stmt = select(Assignment).where(
            Assignment.tenant_id == ref.tenant_id,
            Assignment.entity_id == ref.entity_id,
        )
        if kind is not None:
            stmt = stmt.where(Assignment.kind == kind)
        if language is not None:
            stmt = stmt.where(Assignment.language == language)
        if visible_only:
            stmt = stmt.where(
                Assignment.is_active.is_(True),
                Assignment.is_visible.is_(True),
                or_(Assignment.expires_at.is_(None), Assignment.expires_at > (now or utcnow())),
            )
        stmt = stmt.order_by(
            Assignment.is_primary.desc(),
            Assignment.display_order,
            Assignment.label,
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def _next_display_order(self, ref: EntityRef, kind: LabelKind) -> int:
        stmt = select(func.max(Assignment.display_order)).where(
            Assignment.tenant_id == ref.tenant_id,
            Assignment.entity_id == ref.entity_id,
            Assignment.kind == kind,
        )
        current = (await self._session.execute(stmt)).scalar_one_or_none()
        return 0 if current is None else current + 1

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _default_confidence(self, source: AssignmentSource) -> float:
        if source in (AssignmentSource.MANUAL, AssignmentSource.IMPORTED):
            return settings.default_manual_confidence
        return settings.default_rule_confidence

    async def _validate_assign(
        self,
        slug: str,
        kind: LabelKind,
        confidence: float,
        is_primary: bool | None,
        keyword_density: float | None,
        ref: EntityRef,
    ) -> None:
        errors: dict[str, str] = {}
        if not slug:
            errors["label"] = "label must contain at least one letter or digit"
        if not 0.0 <= confidence <= 1.0:
            errors["confidence"] = f"confidence must be in [0, 1], got {confidence}"
        if is_primary and kind.value not in self._primary_kinds:
            errors["is_primary"] = f"{kind.value} assignments cannot be primary"
        if keyword_density is not None and keyword_density < 0:
            errors["keyword_density"] = "keyword density cannot be negative"
        if errors:
            raise ValidationError(errors)

        if self._require_known_labels and kind is not LabelKind.METADATA:
            await LabelService(self._session).require_label(ref.tenant_id, kind, slug)

    async def _demote_primary(
        self,
        ref: EntityRef,
        kind: LabelKind,
        new_label: str,
        *,
        keep: Assignment | None = None,
        actor: str,
    ) -> Assignment | None:
        current = await self.get_primary(ref, kind)
        if current is None or (keep is not None and current.assignment_id == keep.assignment_id):
            return None

        before = snapshot_assignment(current)
        current.is_primary = False
        self._scores.recompute(current)
        await self._session.flush()
        await self._history.record(
            current,
            before,
            snapshot_assignment(current),
            actor=actor,
            reason=f"demoted: {new_label} became primary",
        )
        self._track(current)
        logger.info("Demoted primary %s:%s on %s", kind.value, current.label, ref)
        return current

    def _track(self, assignment: Assignment) -> None:
        self.changed.append(
            LedgerChange(
                ref=EntityRef(assignment.tenant_id, assignment.entity_id),
                label=assignment.label,
                kind=assignment.kind,
                assignment_id=assignment.assignment_id,
            )
        )

    async def assign(
        self,
        ref: EntityRef,
        label: str,
        kind: LabelKind,
        *,
        source: AssignmentSource = AssignmentSource.MANUAL,
        confidence: float | None = None,
        is_primary: bool | None = None,
        language: str | None = None,
        expires_at: datetime | None = None,
        context_type: str | None = None,
        keyword_density: float | None = None,
        actor: str = "system",
        reason: str | None = None,
    ) -> Assignment:
        """Create, update or reactivate an assignment (idempotent upsert).

        Args:
            ref: The entity.
            label: Label name or slug; normalized before storage.
            kind: tag, category or metadata.
            source: Provenance of the assignment.
            confidence: Certainty in [0, 1]. Defaults by source.
            is_primary: True to make this the single primary of its kind.
                None keeps the current flag of an existing row.
            language: Assignment language (default: settings.default_language).
            expires_at: Optional expiry; after it the row is hidden from
                visible listings and deactivated by the sweep.
            context_type: Optional facet (colour, size, ...).
            keyword_density: Optional keyword density, feeds relevance.
            actor: Who made the change.
            reason: Optional history reason.

        Returns:
            The assignment row.

        Raises:
            ValidationError: Bad label, confidence, or primary on a
                non-primary kind.
            NotFoundError: Unknown label while require_known_labels is on.
        """
        kind = LabelKind(kind)
        source = AssignmentSource(source)
        slug = normalize_label(label)
        language = language or settings.default_language
        if confidence is None:
            confidence = self._default_confidence(source)
        if expires_at is not None:
            expires_at = as_utc(expires_at)
        await self._validate_assign(slug, kind, confidence, is_primary, keyword_density, ref)

        existing = await self.find(ref, slug, kind, language)
        if existing is None:
            return await self._create(
                ref,
                slug,
                kind,
                source=source,
                confidence=confidence,
                is_primary=bool(is_primary),
                language=language,
                expires_at=expires_at,
                context_type=context_type,
                keyword_density=keyword_density,
                actor=actor,
                reason=reason,
            )

        before = snapshot_assignment(existing)
        if is_primary and not existing.is_primary:
            await self._demote_primary(ref, kind, slug, keep=existing, actor=actor)

        existing.source = source
        existing.confidence = confidence
        existing.is_active = True
        existing.is_visible = True
        if is_primary is not None:
            existing.is_primary = is_primary
        if expires_at is not None:
            existing.expires_at = expires_at
        elif is_expired(existing.expires_at):
            existing.expires_at = None
        if context_type is not None:
            existing.context_type = context_type
        if keyword_density is not None:
            existing.keyword_density = keyword_density

        self._scores.recompute(existing)
        await self._session.flush()
        entry = await self._history.record(
            existing, before, snapshot_assignment(existing), actor=actor, reason=reason
        )
        if entry is not None:
            self._track(existing)
        return existing

    async def _create(
        self,
        ref: EntityRef,
        slug: str,
        kind: LabelKind,
        *,
        source: AssignmentSource,
        confidence: float,
        is_primary: bool,
        language: str,
        expires_at: datetime | None,
        context_type: str | None,
        keyword_density: float | None,
        actor: str,
        reason: str | None,
    ) -> Assignment:
        if is_primary:
            await self._demote_primary(ref, kind, slug, actor=actor)

        assignment = Assignment(
            assignment_id=uuid4(),
            tenant_id=ref.tenant_id,
            entity_id=ref.entity_id,
            label=slug,
            kind=kind,
            language=language,
            source=source,
            confidence=confidence,
            is_primary=is_primary,
            is_visible=True,
            is_active=True,
            display_order=await self._next_display_order(ref, kind),
            context_type=context_type,
            keyword_density=keyword_density or 0.0,
            usage_count=0,
            click_count=0,
            view_count=0,
            search_count=0,
            conversion_count=0,
            expires_at=expires_at,
        )
        self._scores.recompute(assignment)
        self._session.add(assignment)
        await self._session.flush()
        await self._history.record(
            assignment, None, snapshot_assignment(assignment), actor=actor, reason=reason
        )
        self._track(assignment)
        logger.info("Assigned %s:%s to %s (source=%s)", kind.value, slug, ref, source.value)
        return assignment

    async def unassign(
        self,
        ref: EntityRef,
        label: str,
        kind: LabelKind,
        *,
        language: str | None = None,
        actor: str = "system",
        reason: str | None = None,
    ) -> Assignment | None:
        """Soft-remove an assignment (inactive, invisible, not primary).

        Returns:
            The deactivated row, or None when there was nothing active to remove.
        """
        assignment = await self.find(ref, label, LabelKind(kind), language)
        if assignment is None or not assignment.is_active:
            return None

        before = snapshot_assignment(assignment)
        assignment.is_active = False
        assignment.is_visible = False
        assignment.is_primary = False
        self._scores.recompute(assignment)
        await self._session.flush()
        await self._history.record(
            assignment, before, snapshot_assignment(assignment), actor=actor, reason=reason
        )
        self._track(assignment)
        logger.info("Unassigned %s:%s from %s", assignment.kind.value, assignment.label, ref)
        return assignment

    async def purge(
        self,
        assignment_id: UUID,
        *,
        actor: str = "system",
        reason: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Hard-delete an inactive or expired assignment; its history is kept.

        Raises:
            NotFoundError: Unknown assignment.
            ConflictError: The assignment is still active and not expired.
        """
        assignment = await self.get(assignment_id)
        if assignment is None:
            raise NotFoundError("assignment", assignment_id)
        if assignment.is_active and not is_expired(assignment.expires_at, now):
            raise ConflictError(
                f"assignment {assignment_id} is active; unassign it before purging"
            )

        await self._history.record(
            assignment, snapshot_assignment(assignment), None, actor=actor, reason=reason
        )
        self._track(assignment)
        await self._session.delete(assignment)
        await self._session.flush()
        logger.info("Purged assignment %s (%s:%s)", assignment_id, assignment.kind.value, assignment.label)

    async def record_usage(
        self,
        assignment_id: UUID,
        *,
        clicks: int = 0,
        views: int = 0,
        searches: int = 0,
        conversions: int = 0,
        now: datetime | None = None,
    ) -> Assignment:
        """Add interaction counts and recompute scores. Writes no history.

        Counters are incremented in SQL, so concurrent writers never lose
        each other's counts.

        Raises:
            NotFoundError: Unknown assignment.
            ValidationError: A negative count.
        """
        counts = {"clicks": clicks, "views": views, "searches": searches, "conversions": conversions}
        negative = {name: "must not be negative" for name, count in counts.items() if count < 0}
        if negative:
            raise ValidationError(negative)

        assignment = await self.get(assignment_id)
        if assignment is None:
            raise NotFoundError("assignment", assignment_id)

        await self._session.execute(
            update(Assignment)
            .where(Assignment.assignment_id == assignment_id)
            .values(
                click_count=Assignment.click_count + clicks,
                view_count=Assignment.view_count + views,
                search_count=Assignment.search_count + searches,
                conversion_count=Assignment.conversion_count + conversions,
                usage_count=Assignment.usage_count + 1,
                last_interaction_at=as_utc(now) if now else utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.refresh(assignment, attribute_names=list(USAGE_COLUMNS))
        self._scores.recompute(assignment)
        await self._session.flush()
        return assignment

    async def expire(
        self,
        now: datetime | None = None,
        *,
        tenant_id: str | None = None,
    ) -> list[Assignment]:
        """Deactivate every active assignment whose expires_at has passed.

        Returns:
            The rows deactivated by this call.
        """
        now = as_utc(now) if now else utcnow()
        stmt = (
            select(Assignment)
            .where(
                Assignment.is_active.is_(True),
                Assignment.expires_at.is_not(None),
                Assignment.expires_at <= now,
            )
            .order_by(Assignment.tenant_id, Assignment.entity_id, Assignment.label)
            .with_for_update()
        )
        if tenant_id is not None:
            stmt = stmt.where(Assignment.tenant_id == tenant_id)
        result = await self._session.execute(stmt)
        expired = list(result.scalars().all())

        for assignment in expired:
            before = snapshot_assignment(assignment)
            assignment.is_active = False
            assignment.is_primary = False
            self._scores.recompute(assignment)
            await self._session.flush()
            await self._history.record(
                assignment,
                before,
                snapshot_assignment(assignment),
                actor=EXPIRY_ACTOR,
                reason="expired",
            )
            self._track(assignment)

        if expired:
            logger.info("Expired %d assignments", len(expired))
        return expired
