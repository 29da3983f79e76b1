"""Rule service: storage and save-time validation of classification rules.

Malformed rules never reach the engine: conditions are parsed into the
typed tree and action parameters checked before a rule is saved, and the
canonical form of the tree is what gets stored.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from label_engine.config import settings
from label_engine.exceptions import ConflictError, NotFoundError, ValidationError
from label_engine.models.enums import ExecutionMode, LabelKind, RuleAction, ValueType
from label_engine.models.rule import Rule
from label_engine.rules.conditions import dump_condition, parse_condition
from label_engine.utils.text import normalize_label

logger = logging.getLogger(__name__)

_UPDATABLE = frozenset(
    {
        "description",
        "conditions",
        "action",
        "kind",
        "target_labels",
        "parameters",
        "is_primary",
        "priority",
        "confidence",
        "execution_mode",
        "is_active",
    }
)


def validate_rule_definition(
    *,
    name: str,
    conditions: Any,
    action: RuleAction | str,
    kind: LabelKind | str,
    target_labels: list[str],
    parameters: dict[str, Any] | None,
    is_primary: bool,
    priority: int,
    confidence: float,
    execution_mode: ExecutionMode | str,
) -> dict[str, Any]:
    """Validate a rule definition and return its canonical column values.

    Raises:
        ValidationError: With every failing field.
    """
    errors: dict[str, str] = {}
    values: dict[str, Any] = {}

    if not name or not name.strip():
        errors["name"] = "name is required"
    values["name"] = (name or "").strip()

    try:
        values["conditions"] = dump_condition(parse_condition(conditions))
    except ValidationError as exc:
        errors.update(exc.errors)

    for column, enum_type, raw in (
        ("action", RuleAction, action),
        ("kind", LabelKind, kind),
        ("execution_mode", ExecutionMode, execution_mode),
    ):
        try:
            values[column] = enum_type(raw)
        except ValueError:
            allowed = ", ".join(member.value for member in enum_type)
            errors[column] = f"must be one of: {allowed}"

    action_value = values.get("action")
    targets = [t.strip() for t in target_labels or [] if t and t.strip()]
    if not targets:
        errors["target_labels"] = "at least one target is required"
    elif action_value is not RuleAction.MODIFY_VALUE:
        targets = [normalize_label(t) for t in targets]
        if not all(targets):
            errors["target_labels"] = "labels must contain at least one letter or digit"
    values["target_labels"] = targets

    parameters = dict(parameters or {})
    if action_value is RuleAction.MODIFY_VALUE:
        try:
            ValueType(parameters.get("type"))
        except ValueError:
            allowed = ", ".join(member.value for member in ValueType)
            errors["parameters.type"] = f"must be one of: {allowed}"
        if "value" not in parameters:
            errors["parameters.value"] = "value is required for modify_value"
    values["parameters"] = parameters

    if (
        values.get("execution_mode") is ExecutionMode.SUGGESTION_ONLY
        and action_value is not None
        and action_value is not RuleAction.ASSIGN
    ):
        errors["execution_mode"] = "only assign rules can run as suggestion_only"

    if is_primary:
        if action_value is not RuleAction.ASSIGN:
            errors["is_primary"] = "only assign rules can set a primary"
        elif values.get("kind") is not None and values["kind"].value not in settings.primary_kinds:
            errors["is_primary"] = f"{values['kind'].value} assignments cannot be primary"
        elif len(targets) > 1:
            errors["is_primary"] = "a primary rule must target exactly one label"
    values["is_primary"] = bool(is_primary)

    if priority < 0:
        errors["priority"] = "priority must be >= 0"
    values["priority"] = priority

    if not 0.0 <= confidence <= 1.0:
        errors["confidence"] = f"confidence must be in [0, 1], got {confidence}"
    values["confidence"] = confidence

    if errors:
        raise ValidationError(errors)
    return values


class RuleService:
    """Service for creating, updating and listing rules.

    Usage:
        async with AsyncSession(engine) as session:
            service = RuleService(session)
            rule = await service.create_rule(
                "store-1",
                "red-shirts",
                conditions={"field": "name", "op": "contains", "value": "red"},
                action=RuleAction.ASSIGN,
                kind=LabelKind.TAG,
                target_labels=["red"],
            )
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the service with a database session."""
        self._session = session

    async def create_rule(
        self,
        tenant_id: str,
        name: str,
        *,
        conditions: Any,
        action: RuleAction | str,
        kind: LabelKind | str,
        target_labels: list[str],
        parameters: dict[str, Any] | None = None,
        description: str | None = None,
        is_primary: bool = False,
        priority: int = 0,
        confidence: float | None = None,
        execution_mode: ExecutionMode | str = ExecutionMode.AUTOMATIC,
        is_active: bool = True,
    ) -> Rule:
        """Validate and store a new rule.

        Raises:
            ValidationError: The definition is malformed.
            ConflictError: The tenant already has a rule with this name.
        """
        values = validate_rule_definition(
            name=name,
            conditions=conditions,
            action=action,
            kind=kind,
            target_labels=target_labels,
            parameters=parameters,
            is_primary=is_primary,
            priority=priority,
            confidence=settings.default_rule_confidence if confidence is None else confidence,
            execution_mode=execution_mode,
        )
        if await self.get_rule_by_name(tenant_id, values["name"]) is not None:
            raise ConflictError(f"rule {values['name']!r} already exists for tenant {tenant_id}")

        rule = Rule(
            rule_id=uuid4(),
            tenant_id=tenant_id,
            description=description,
            is_active=is_active,
            matches_count=0,
            **values,
        )
        self._session.add(rule)
        await self._session.flush()
        logger.info("Created rule %s (%s %s) for %s", rule.name, rule.action.value, rule.target_labels, tenant_id)
        return rule

    async def update_rule(self, rule_id: UUID, **changes: Any) -> Rule:
        """Apply changes to a rule, re-validating the whole definition.

        Raises:
            NotFoundError: Unknown rule.
            ValidationError: Unknown field or malformed result.
        """
        rule = await self.get_rule(rule_id)
        if rule is None:
            raise NotFoundError("rule", rule_id)
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValidationError({field: "field cannot be updated" for field in sorted(unknown)})

        merged = {
            "conditions": rule.conditions,
            "action": rule.action,
            "kind": rule.kind,
            "target_labels": rule.target_labels,
            "parameters": rule.parameters,
            "is_primary": rule.is_primary,
            "priority": rule.priority,
            "confidence": rule.confidence,
            "execution_mode": rule.execution_mode,
        }
        merged.update({k: v for k, v in changes.items() if k in merged})
        values = validate_rule_definition(name=rule.name, **merged)
        values.pop("name")

        for column, value in values.items():
            setattr(rule, column, value)
        if "description" in changes:
            rule.description = changes["description"]
        if "is_active" in changes:
            rule.is_active = bool(changes["is_active"])
        await self._session.flush()
        return rule

    async def get_rule(self, rule_id: UUID) -> Rule | None:
        """Find a rule by id."""
        return await self._session.get(Rule, rule_id)

    async def get_rule_by_name(self, tenant_id: str, name: str) -> Rule | None:
        """Find a tenant's rule by name."""
        stmt = select(Rule).where(Rule.tenant_id == tenant_id, Rule.name == name.strip())
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_rules(
        self,
        tenant_id: str,
        *,
        active_only: bool = True,
        execution_modes: list[ExecutionMode] | None = None,
    ) -> list[Rule]:
        """List a tenant's rules in evaluation order.

        Evaluation order is priority descending, then creation order, then
        name, so equal-priority rules always run in the same sequence.
        """
        stmt = select(Rule).where(Rule.tenant_id == tenant_id)
        if active_only:
            stmt = stmt.where(Rule.is_active.is_(True))
        if execution_modes is not None:
            stmt = stmt.where(Rule.execution_mode.in_(execution_modes))
        stmt = stmt.order_by(Rule.priority.desc(), Rule.created_at, Rule.name)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def deactivate_rule(self, rule_id: UUID) -> Rule:
        """Stop a rule from running. Its assignments stay in place."""
        rule = await self.get_rule(rule_id)
        if rule is None:
            raise NotFoundError("rule", rule_id)
        rule.is_active = False
        await self._session.flush()
        return rule
