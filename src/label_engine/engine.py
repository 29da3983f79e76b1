"""ClassificationEngine: the facade collaborators call.

Each public call is one unit of work:
1. Take the per-entity lock (entity-scoped writes only)
2. Open a session and a transaction
3. Run the services against that session
4. Commit, or roll back on any error
5. Retry with a fresh read when the commit lost a uniqueness race
6. After commit, notify assignment listeners

Services never commit; the facade owns transaction boundaries.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import AbstractAsyncContextManager, asynccontextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from label_engine.config import settings
from label_engine.entities import AssignmentListener, EntityRef, EntityText, EntityTextProvider
from label_engine.exceptions import ConflictError, LabelEngineError
from label_engine.models.assignment import Assignment
from label_engine.models.attribute import Attribute
from label_engine.models.enums import Decision, LabelKind, TextFormat, ValueType
from label_engine.models.history import AssignmentHistory
from label_engine.models.label import Label
from label_engine.models.rule import Rule
from label_engine.models.suggestion import Suggestion
from label_engine.results import Failure
from label_engine.rules.engine import ApplyResult, RuleEngine
from label_engine.services.history import HistoryLog
from label_engine.services.labels import LabelService
from label_engine.services.ledger import AssignmentLedger, LedgerChange
from label_engine.services.rules import RuleService
from label_engine.services.scores import ScoreCalculator
from label_engine.services.value_store import SetValueResult, ValueStore
from label_engine.suggestions.pipeline import GenerateResult, ResolutionResult, SuggestionPipeline
from label_engine.suggestions.scoring import SuggestionScorer
from label_engine.values import AttributeValue, plain_value

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SweepResult:
    """Result of a maintenance sweep."""

    expired_assignment_ids: list[UUID] = field(default_factory=list)
    expired_suggestion_ids: list[UUID] = field(default_factory=list)


@dataclass
class BatchApplyResult:
    """Result of apply_batch(): per-entity results plus failures.

    results is keyed by "tenant/entity". An entity listed in failures had
    its unit of work rolled back; every other entity is committed.
    """

    results: dict[str, ApplyResult] = field(default_factory=dict)
    failures: list[Failure] = field(default_factory=list)


class EntityLocks:
    """One asyncio.Lock per entity, held only while someone uses it.

    Serializes entity-scoped writes inside this process; the database
    constraints guard against other processes. A lock is dropped once no
    task holds or waits on it, so the registry only ever contains entities
    with writes in flight.
    """

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._users: dict[tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, ref: EntityRef) -> AsyncIterator[None]:
        key = (ref.tenant_id, ref.entity_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class UnitOfWork:
    """The services of one transaction, all bound to the same session."""

    session: AsyncSession
    history: HistoryLog
    ledger: AssignmentLedger
    values: ValueStore
    labels: LabelService
    rules: RuleService
    pipeline: SuggestionPipeline
    rule_engine: RuleEngine


class ValueStoreTextProvider:
    """Default EntityTextProvider: reads the `name` and `description` attributes."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_entity_text(self, ref: EntityRef) -> EntityText:
        async with self._session_factory() as session:
            store = ValueStore(session)
            name = await store.get(ref, "name")
            description = await store.get(ref, "description")
        return EntityText(
            name=_as_text(name),
            description=_as_text(description),
        )


def _as_text(value: AttributeValue | None) -> str | None:
    if value is None:
        return None
    raw = plain_value(value)
    if isinstance(raw, list):
        return " ".join(str(item) for item in raw)
    return str(raw)


class ClassificationEngine:
    """Attribute & classification engine facade.

    Usage:
        engine = ClassificationEngine(async_session_factory)
        await engine.set_value(ref, "name", ValueType.TEXT, "Red Cotton Shirt")
        result = await engine.notify_entity_changed(ref, {"material": "cotton"})
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        scorer: SuggestionScorer | None = None,
        text_provider: EntityTextProvider | None = None,
        listeners: Iterable[AssignmentListener] = (),
        scores: ScoreCalculator | None = None,
        retry_attempts: int | None = None,
        batch_chunk_size: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._scorer = scorer
        self._text_provider: EntityTextProvider = text_provider or ValueStoreTextProvider(
            session_factory
        )
        self._listeners: list[AssignmentListener] = list(listeners)
        self._scores = scores or ScoreCalculator()
        self._retry_attempts = max(
            1, settings.conflict_retry_attempts if retry_attempts is None else retry_attempts
        )
        self._batch_chunk_size = max(
            1, settings.batch_chunk_size if batch_chunk_size is None else batch_chunk_size
        )
        self.locks = EntityLocks()

    def add_listener(self, listener: AssignmentListener) -> None:
        """Register an onAssignmentChanged callback (sync or async)."""
        self._listeners.append(listener)

    # -------------------------------------------------------------------------
    # Units of work
    # -------------------------------------------------------------------------

    def _unit(self, session: AsyncSession) -> UnitOfWork:
        history = HistoryLog(session)
        ledger = AssignmentLedger(session, history, self._scores)
        values = ValueStore(session, history)
        rules = RuleService(session)
        pipeline = SuggestionPipeline(session, ledger, self._scorer)
        return UnitOfWork(
            session=session,
            history=history,
            ledger=ledger,
            values=values,
            labels=LabelService(session),
            rules=rules,
            pipeline=pipeline,
            rule_engine=RuleEngine(session, ledger, values, pipeline, rules),
        )

    async def _transact(
        self,
        ref: EntityRef | None,
        work: Callable[[UnitOfWork], Awaitable[T]],
    ) -> T:
        """Run work in one transaction, retrying lost uniqueness races.

        Raises:
            ConflictError: Still conflicting after conflict_retry_attempts.
        """
        attempt = 0
        while True:
            attempt += 1
            lock: AbstractAsyncContextManager[Any] = (
                self.locks.hold(ref) if ref is not None else nullcontext()
            )
            async with lock:
                try:
                    async with self._session_factory() as session:
                        async with session.begin():
                            unit = self._unit(session)
                            value = await work(unit)
                except IntegrityError as exc:
                    if attempt == self._retry_attempts:
                        raise ConflictError(
                            f"write for {ref or 'maintenance'} still conflicting after "
                            f"{attempt} attempts"
                        ) from exc
                    logger.info("Conflict on %s (attempt %d), retrying: %s", ref, attempt, exc.orig)
                    continue
            await self._notify(unit.ledger.changed)
            return value

    async def _notify(self, changes: list[LedgerChange]) -> None:
        seen: set[tuple[EntityRef, str, LabelKind]] = set()
        for change in changes:
            key = (change.ref, change.label, change.kind)
            if key in seen:
                continue
            seen.add(key)
            for listener in self._listeners:
                try:
                    outcome = listener(change.ref, change.label, change.kind)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception:
                    logger.exception(
                        "Assignment listener failed for %s %s:%s",
                        change.ref,
                        change.kind.value,
                        change.label,
                    )

    # -------------------------------------------------------------------------
    # Values
    # -------------------------------------------------------------------------

    async def set_value(
        self,
        ref: EntityRef,
        key: str,
        value_type: ValueType | str,
        raw: Any,
        *,
        language: str | None = None,
        value_format: TextFormat | str | None = None,
        validation_rules: dict[str, Any] | None = None,
        actor: str = "system:value_store",
    ) -> SetValueResult:
        """Validate and store one attribute value (see ValueStore.set)."""

        async def work(unit: UnitOfWork) -> SetValueResult:
            return await unit.values.set(
                ref,
                key,
                value_type,
                raw,
                language=language,
                value_format=value_format,
                validation_rules=validation_rules,
                actor=actor,
            )

        return await self._transact(ref, work)

    async def get_value(
        self, ref: EntityRef, key: str, language: str | None = None
    ) -> AttributeValue | None:
        async with self._session_factory() as session:
            return await ValueStore(session).get(ref, key, language)

    async def list_values(self, ref: EntityRef, language: str | None = None) -> list[Attribute]:
        async with self._session_factory() as session:
            return await ValueStore(session).list_attributes(ref, language)

    async def delete_value(self, ref: EntityRef, key: str, language: str | None = None) -> bool:
        return await self._transact(ref, lambda unit: unit.values.delete(ref, key, language))

    # -------------------------------------------------------------------------
    # Assignments
    # -------------------------------------------------------------------------

    async def assign(self, ref: EntityRef, label: str, kind: LabelKind, **options: Any) -> Assignment:
        """Create, update or reactivate an assignment (see AssignmentLedger.assign)."""
        return await self._transact(ref, lambda unit: unit.ledger.assign(ref, label, kind, **options))

    async def unassign(
        self, ref: EntityRef, label: str, kind: LabelKind, **options: Any
    ) -> Assignment | None:
        """Soft-remove an assignment (see AssignmentLedger.unassign)."""
        return await self._transact(ref, lambda unit: unit.ledger.unassign(ref, label, kind, **options))

    async def purge(self, assignment_id: UUID, **options: Any) -> None:
        """Hard-delete an inactive or expired assignment; history is kept."""
        await self._transact(None, lambda unit: unit.ledger.purge(assignment_id, **options))

    async def list_assignments(
        self,
        ref: EntityRef,
        *,
        kind: LabelKind | None = None,
        visible_only: bool = True,
        language: str | None = None,
    ) -> list[Assignment]:
        async with self._session_factory() as session:
            return await AssignmentLedger(session).list_assignments(
                ref, kind=kind, visible_only=visible_only, language=language
            )

    async def get_assignment(self, assignment_id: UUID) -> Assignment | None:
        async with self._session_factory() as session:
            return await AssignmentLedger(session).get(assignment_id)

    async def get_primary(self, ref: EntityRef, kind: LabelKind) -> Assignment | None:
        async with self._session_factory() as session:
            return await AssignmentLedger(session).get_primary(ref, kind)

    async def record_usage(self, assignment_id: UUID, **counts: Any) -> Assignment:
        """Add interaction counts to an assignment and recompute its scores."""
        return await self._transact(None, lambda unit: unit.ledger.record_usage(assignment_id, **counts))

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    async def notify_entity_changed(
        self,
        ref: EntityRef,
        snapshot: dict[str, Any] | None = None,
        *,
        language: str | None = None,
    ) -> ApplyResult:
        """Inbound hook for collaborators: re-run the entity's rules."""
        return await self.apply(ref, snapshot, language=language)

    async def apply(
        self,
        ref: EntityRef,
        fields: dict[str, Any] | None = None,
        *,
        language: str | None = None,
        now: datetime | None = None,
    ) -> ApplyResult:
        """Apply the tenant's rules to one entity in one unit of work."""
        return await self._transact(
            ref, lambda unit: unit.rule_engine.apply(ref, fields, language=language, now=now)
        )

    async def apply_rule(
        self,
        rule_id: UUID,
        ref: EntityRef,
        fields: dict[str, Any] | None = None,
        *,
        language: str | None = None,
    ) -> ApplyResult:
        """Apply one rule regardless of its execution mode."""
        return await self._transact(
            ref, lambda unit: unit.rule_engine.apply_rule(rule_id, ref, fields, language=language)
        )

    async def apply_batch(
        self,
        items: Iterable[tuple[EntityRef, dict[str, Any] | None]],
        *,
        language: str | None = None,
    ) -> BatchApplyResult:
        """Apply rules to many entities, committing each entity separately.

        A failing entity is rolled back and reported; the others are kept.
        """
        batch = BatchApplyResult()
        pending = list(items)
        for start in range(0, len(pending), self._batch_chunk_size):
            chunk = pending[start : start + self._batch_chunk_size]
            for ref, fields in chunk:
                try:
                    batch.results[str(ref)] = await self.apply(ref, fields, language=language)
                except (LabelEngineError, SQLAlchemyError) as exc:
                    logger.exception("Rule application failed for %s", ref)
                    batch.failures.append(Failure.from_exception(ref, exc))
            logger.info(
                "Batch progress: %d/%d entities, %d failures",
                min(start + len(chunk), len(pending)),
                len(pending),
                len(batch.failures),
            )
        return batch

    async def create_rule(self, tenant_id: str, name: str, **definition: Any) -> Rule:
        return await self._transact(
            None, lambda unit: unit.rules.create_rule(tenant_id, name, **definition)
        )

    async def update_rule(self, rule_id: UUID, **changes: Any) -> Rule:
        return await self._transact(None, lambda unit: unit.rules.update_rule(rule_id, **changes))

    async def deactivate_rule(self, rule_id: UUID) -> Rule:
        return await self._transact(None, lambda unit: unit.rules.deactivate_rule(rule_id))

    async def list_rules(self, tenant_id: str, *, active_only: bool = True) -> list[Rule]:
        async with self._session_factory() as session:
            return await RuleService(session).list_rules(tenant_id, active_only=active_only)

    # -------------------------------------------------------------------------
    # Vocabulary
    # -------------------------------------------------------------------------

    async def create_label(
        self, tenant_id: str, kind: LabelKind, name: str, **options: Any
    ) -> tuple[Label, bool]:
        return await self._transact(
            None, lambda unit: unit.labels.create_label(tenant_id, kind, name, **options)
        )

    async def list_labels(self, tenant_id: str, *, kind: LabelKind | None = None) -> list[Label]:
        async with self._session_factory() as session:
            return await LabelService(session).list_labels(tenant_id, kind=kind)

    async def deactivate_label(self, tenant_id: str, kind: LabelKind, slug: str) -> Label | None:
        return await self._transact(
            None, lambda unit: unit.labels.deactivate_label(tenant_id, kind, slug)
        )

    # -------------------------------------------------------------------------
    # Suggestions
    # -------------------------------------------------------------------------

    async def generate(
        self,
        ref: EntityRef,
        text: EntityText | None = None,
        *,
        source: str | None = None,
        max_suggestions: int | None = None,
        kinds: list[LabelKind] | None = None,
        language: str | None = None,
    ) -> GenerateResult:
        """Generate suggestions for an entity.

        Without text, the entity text comes from the configured
        EntityTextProvider.
        """
        if text is None:
            text = await self._text_provider.get_entity_text(ref)
        return await self._transact(
            ref,
            lambda unit: unit.pipeline.generate(
                ref,
                text,
                source=source,
                max_suggestions=max_suggestions,
                kinds=kinds,
                language=language,
            ),
        )

    async def resolve(
        self,
        suggestion_id: UUID,
        decision: Decision | str,
        *,
        feedback_score: int | None = None,
        comment: str | None = None,
        reviewer: str | None = None,
    ) -> ResolutionResult:
        """Accept or reject a pending suggestion."""
        suggestion = await self.get_suggestion(suggestion_id)
        ref = EntityRef(suggestion.tenant_id, suggestion.entity_id) if suggestion else None
        return await self._transact(
            ref,
            lambda unit: unit.pipeline.resolve(
                suggestion_id,
                decision,
                feedback_score=feedback_score,
                comment=comment,
                reviewer=reviewer,
            ),
        )

    async def get_suggestion(self, suggestion_id: UUID) -> Suggestion | None:
        async with self._session_factory() as session:
            return await session.get(Suggestion, suggestion_id)

    async def pending_suggestions(
        self, ref: EntityRef, kind: LabelKind | None = None
    ) -> list[Suggestion]:
        async with self._session_factory() as session:
            return await SuggestionPipeline(session, AssignmentLedger(session)).pending_for(ref, kind)

    # -------------------------------------------------------------------------
    # Maintenance and history
    # -------------------------------------------------------------------------

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        """Deactivate expired assignments and expire overdue pending suggestions."""

        async def work(unit: UnitOfWork) -> SweepResult:
            assignments = await unit.ledger.expire(now)
            suggestions = await unit.pipeline.sweep(now)
            return SweepResult(
                expired_assignment_ids=[a.assignment_id for a in assignments],
                expired_suggestion_ids=suggestions,
            )

        result = await self._transact(None, work)
        logger.info(
            "Sweep expired %d assignments and %d suggestions",
            len(result.expired_assignment_ids),
            len(result.expired_suggestion_ids),
        )
        return result

    async def history(
        self,
        ref: EntityRef,
        *,
        kind: LabelKind | None = None,
        label: str | None = None,
        limit: int | None = None,
    ) -> list[AssignmentHistory]:
        async with self._session_factory() as session:
            return await HistoryLog(session).for_entity(ref, kind=kind, label=label, limit=limit)

    async def assignment_history(self, assignment_id: UUID) -> list[AssignmentHistory]:
        async with self._session_factory() as session:
            return await HistoryLog(session).for_assignment(assignment_id)
