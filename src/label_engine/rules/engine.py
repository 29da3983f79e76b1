"""Rule engine: evaluates a tenant's rules against one entity.

This module implements rule application:
1. Build the snapshot once: stored attribute values overlaid with the
   caller's fields. Actions never feed back into it, so rules do not
   cascade within one call.
2. Load active rules in evaluation order (priority desc, creation order,
   name).
3. For each rule: parse, evaluate, and on a match run its action exactly
   once and bump matches_count / last_executed_at in SQL.
4. A rule never undoes a decision an earlier rule of the same call made
   (see RuleClaims). The later rule yields and the conflict is reported
   in failures.
5. Malformed or type-incompatible rules are logged, reported in
   failures and skipped; the remaining rules still run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from label_engine.config import settings
from label_engine.entities import EntityRef
from label_engine.exceptions import (
    ConflictError,
    NotFoundError,
    RuleEvaluationError,
    ValidationError,
)
from label_engine.models.enums import AssignmentSource, ExecutionMode, LabelKind, RuleAction
from label_engine.models.rule import Rule
from label_engine.results import Failure
from label_engine.rules.conditions import evaluate, parse_condition
from label_engine.services.ledger import AssignmentLedger
from label_engine.services.rules import RuleService
from label_engine.services.value_store import ValueStore
from label_engine.suggestions.pipeline import SuggestionPipeline
from label_engine.utils.clock import as_utc, utcnow
from label_engine.utils.text import normalize_label

logger = logging.getLogger(__name__)

MANUAL_SOURCES = frozenset({AssignmentSource.MANUAL, AssignmentSource.IMPORTED})
DEFAULT_MODES = (ExecutionMode.AUTOMATIC, ExecutionMode.SUGGESTION_ONLY)


@dataclass
class ApplyResult:
    """Result of applying rules to one entity.

    assignment_ids lists every assignment a matched assign rule targets,
    including untouched manual ones. created_ids and changed_ids are the
    subsets this call created or modified.
    """

    assignment_ids: list[UUID] = field(default_factory=list)
    created_ids: list[UUID] = field(default_factory=list)
    changed_ids: list[UUID] = field(default_factory=list)
    matched_rules: list[str] = field(default_factory=list)
    suggestion_ids: list[UUID] = field(default_factory=list)
    modified_keys: list[str] = field(default_factory=list)
    failures: list[Failure] = field(default_factory=list)


@dataclass
class RuleClaims:
    """Decisions already made by earlier rules of one apply call.

    Rules run in priority order, so an earlier rule outranks a later one.
    A later rule may not remove a label an earlier rule assigned, assign
    one an earlier rule removed, take the primary of a kind an earlier
    rule made primary, or overwrite a value an earlier rule set.
    """

    labels: dict[tuple[str, LabelKind], tuple[str, RuleAction]] = field(default_factory=dict)
    primaries: dict[LabelKind, tuple[str, str]] = field(default_factory=dict)
    values: dict[str, str] = field(default_factory=dict)


class RuleEngine:
    """Evaluates rules and dispatches their actions to the ledger, value store and pipeline.

    Usage:
        async with AsyncSession(engine) as session:
            ledger = AssignmentLedger(session)
            rule_engine = RuleEngine(
                session, ledger, ValueStore(session), SuggestionPipeline(session, ledger)
            )
            result = await rule_engine.apply(ref, {"name": "Red Cotton Shirt"})
            await session.commit()
    """

    def __init__(
        self,
        session: AsyncSession,
        ledger: AssignmentLedger,
        values: ValueStore,
        pipeline: SuggestionPipeline,
        rules: RuleService | None = None,
    ) -> None:
        """Initialize the engine with its collaborators, all sharing one session."""
        self._session = session
        self._ledger = ledger
        self._values = values
        self._pipeline = pipeline
        self._rules = rules or RuleService(session)

    async def build_snapshot(
        self,
        ref: EntityRef,
        fields: dict[str, Any] | None = None,
        language: str | None = None,
    ) -> dict[str, Any]:
        """Stored attribute values overlaid with caller-supplied fields."""
        snapshot = await self._values.snapshot(ref, language)
        snapshot.update(fields or {})
        return snapshot

    async def apply(
        self,
        ref: EntityRef,
        fields: dict[str, Any] | None = None,
        *,
        language: str | None = None,
        now: datetime | None = None,
    ) -> ApplyResult:
        """Apply every active automatic and suggestion-only rule of the tenant.

        Args:
            ref: The entity.
            fields: Caller snapshot of the entity; overrides stored values.
            language: Language of values and assignments.
            now: Execution time recorded on matched rules.

        Returns:
            ApplyResult. Applying the same inputs twice yields the same
            assignments; the second call creates and changes nothing.
        """
        language = language or settings.default_language
        now = as_utc(now) if now else utcnow()
        snapshot = await self.build_snapshot(ref, fields, language)
        rules = await self._rules.list_rules(ref.tenant_id, execution_modes=list(DEFAULT_MODES))

        result = ApplyResult()
        claims = RuleClaims()
        for rule in rules:
            await self._run(rule, ref, snapshot, result, claims, language=language, now=now)

        logger.info(
            "Applied %d rules to %s: matched=%s created=%d changed=%d failures=%d",
            len(rules),
            ref,
            result.matched_rules,
            len(result.created_ids),
            len(result.changed_ids),
            len(result.failures),
        )
        return result

    async def apply_rule(
        self,
        rule_id: UUID,
        ref: EntityRef,
        fields: dict[str, Any] | None = None,
        *,
        language: str | None = None,
        now: datetime | None = None,
    ) -> ApplyResult:
        """Apply one rule regardless of its execution mode (the path for manual rules).

        Raises:
            NotFoundError: Unknown rule or a rule of another tenant.
            ConflictError: The rule is inactive.
        """
        rule = await self._rules.get_rule(rule_id)
        if rule is None or rule.tenant_id != ref.tenant_id:
            raise NotFoundError("rule", rule_id)
        if not rule.is_active:
            raise ConflictError(f"rule {rule.name!r} is inactive")

        language = language or settings.default_language
        result = ApplyResult()
        snapshot = await self.build_snapshot(ref, fields, language)
        await self._run(
            rule,
            ref,
            snapshot,
            result,
            RuleClaims(),
            language=language,
            now=as_utc(now) if now else utcnow(),
        )
        return result

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def matches(self, rule: Rule, snapshot: dict[str, Any]) -> bool:
        """Parse and evaluate a rule's conditions.

        Raises:
            RuleEvaluationError: Malformed conditions or incompatible types.
        """
        try:
            condition = parse_condition(rule.conditions)
        except ValidationError as exc:
            raise RuleEvaluationError(rule.rule_id, f"malformed conditions: {exc}") from exc
        try:
            return evaluate(condition, snapshot)
        except RuleEvaluationError as exc:
            raise RuleEvaluationError(rule.rule_id, str(exc)) from exc

    async def _run(
        self,
        rule: Rule,
        ref: EntityRef,
        snapshot: dict[str, Any],
        result: ApplyResult,
        claims: RuleClaims,
        *,
        language: str,
        now: datetime,
    ) -> None:
        try:
            matched = self.matches(rule, snapshot)
        except RuleEvaluationError as exc:
            logger.warning("Skipping rule %s for %s: %s", rule.name, ref, exc)
            result.failures.append(Failure.from_exception(rule.name, exc))
            return

        logger.debug("Rule %s on %s: %s", rule.name, ref, "match" if matched else "no match")
        if not matched:
            return

        await self._session.execute(
            update(Rule)
            .where(Rule.rule_id == rule.rule_id)
            .values(matches_count=Rule.matches_count + 1, last_executed_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._session.refresh(rule, attribute_names=["matches_count", "last_executed_at"])
        result.matched_rules.append(rule.name)

        if rule.execution_mode is ExecutionMode.SUGGESTION_ONLY:
            await self._propose(rule, ref, result, language=language, now=now)
        elif rule.action is RuleAction.ASSIGN:
            await self._assign(rule, ref, result, claims, language=language)
        elif rule.action is RuleAction.REMOVE:
            await self._remove(rule, ref, result, claims, language=language)
        elif rule.action is RuleAction.REQUIRE:
            await self._require(rule, ref, result, language=language)
        elif rule.action is RuleAction.MODIFY_VALUE:
            await self._modify_value(rule, ref, result, claims, language=language)

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def _yield(self, rule: Rule, item: str, owner: str, ref: EntityRef, result: ApplyResult) -> None:
        logger.info("Rule %s yields %s on %s to earlier rule %s", rule.name, item, ref, owner)
        result.failures.append(
            Failure(
                item=f"{rule.name}:{item}",
                error="conflict",
                message=f"{item} already decided by earlier rule {owner!r}",
            )
        )

    async def _assign(
        self, rule: Rule, ref: EntityRef, result: ApplyResult, claims: RuleClaims, *, language: str
    ) -> None:
        for label in rule.target_labels:
            slug = normalize_label(label)
            owner = claims.labels.get((slug, rule.kind))
            if owner is not None and owner[0] != rule.name:
                if owner[1] is RuleAction.REMOVE:
                    self._yield(rule, slug, owner[0], ref, result)
                continue

            is_primary = rule.is_primary
            holder = claims.primaries.get(rule.kind)
            if is_primary and holder is not None and holder != (rule.name, slug):
                self._yield(rule, f"primary {rule.kind.value}", holder[0], ref, result)
                is_primary = False

            existing = await self._ledger.find(ref, slug, rule.kind, language)
            if existing is not None and existing.is_active and existing.source in MANUAL_SOURCES:
                claims.labels[(slug, rule.kind)] = (rule.name, RuleAction.ASSIGN)
                result.assignment_ids.append(existing.assignment_id)
                continue

            changes_before = len(self._ledger.changed)
            try:
                assignment = await self._ledger.assign(
                    ref,
                    slug,
                    rule.kind,
                    source=AssignmentSource.RULE,
                    confidence=rule.confidence,
                    is_primary=True if is_primary else None,
                    language=language,
                    actor=f"rule:{rule.name}",
                    reason=f"matched rule {rule.name}",
                )
            except (ValidationError, NotFoundError) as exc:
                logger.warning("Rule %s could not assign %s to %s: %s", rule.name, label, ref, exc)
                result.failures.append(Failure.from_exception(f"{rule.name}:{label}", exc))
                continue

            claims.labels[(slug, rule.kind)] = (rule.name, RuleAction.ASSIGN)
            if is_primary:
                claims.primaries[rule.kind] = (rule.name, slug)
            result.assignment_ids.append(assignment.assignment_id)
            if existing is None:
                result.created_ids.append(assignment.assignment_id)
            elif len(self._ledger.changed) > changes_before:
                result.changed_ids.append(assignment.assignment_id)

    async def _remove(
        self, rule: Rule, ref: EntityRef, result: ApplyResult, claims: RuleClaims, *, language: str
    ) -> None:
        for label in rule.target_labels:
            slug = normalize_label(label)
            owner = claims.labels.get((slug, rule.kind))
            if owner is not None and owner[0] != rule.name:
                if owner[1] is RuleAction.ASSIGN:
                    self._yield(rule, slug, owner[0], ref, result)
                continue

            claims.labels[(slug, rule.kind)] = (rule.name, RuleAction.REMOVE)
            removed = await self._ledger.unassign(
                ref,
                label,
                rule.kind,
                language=language,
                actor=f"rule:{rule.name}",
                reason=f"matched rule {rule.name}",
            )
            if removed is not None:
                result.changed_ids.append(removed.assignment_id)

    async def _require(self, rule: Rule, ref: EntityRef, result: ApplyResult, *, language: str) -> None:
        for label in rule.target_labels:
            existing = await self._ledger.find(ref, label, rule.kind, language)
            if existing is None or not existing.is_active:
                result.failures.append(
                    Failure(
                        item=f"{rule.name}:{label}",
                        error="requirement",
                        message=f"required {rule.kind.value} {label!r} is missing",
                    )
                )

    async def _modify_value(
        self, rule: Rule, ref: EntityRef, result: ApplyResult, claims: RuleClaims, *, language: str
    ) -> None:
        parameters = rule.parameters or {}
        for key in rule.target_labels:
            owner = claims.values.get(normalize_label(key))
            if owner is not None and owner != rule.name:
                self._yield(rule, key, owner, ref, result)
                continue

            outcome = await self._values.set(
                ref,
                key,
                parameters.get("type", ""),
                parameters.get("value"),
                language=parameters.get("language") or language,
                actor=f"rule:{rule.name}",
                reason=f"matched rule {rule.name}",
            )
            if not outcome.success:
                message = "; ".join(f"{k}: {v}" for k, v in outcome.errors.items())
                logger.warning("Rule %s could not set %s on %s: %s", rule.name, key, ref, message)
                result.failures.append(
                    Failure(item=f"{rule.name}:{key}", error="ValidationError", message=message)
                )
                continue

            claims.values[normalize_label(key)] = rule.name
            if outcome.changed:
                result.modified_keys.append(key)

    async def _propose(
        self,
        rule: Rule,
        ref: EntityRef,
        result: ApplyResult,
        *,
        language: str,
        now: datetime,
    ) -> None:
        for label in rule.target_labels:
            suggestion = await self._pipeline.propose(
                ref,
                label,
                rule.kind,
                source=f"rule:{rule.name}",
                confidence=rule.confidence,
                reasoning=f"matched rule {rule.name}",
                supporting_data={"rule_id": str(rule.rule_id)},
                language=language,
                now=now,
            )
            if suggestion is not None:
                result.suggestion_ids.append(suggestion.suggestion_id)
