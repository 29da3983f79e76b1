"""Value store service for typed entity attributes.

Values are validated before anything is written: a failed set() leaves
the stored value untouched and reports every failing field. Persisted
value_format and validation_rules are re-applied on every later set()
unless the caller replaces them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from label_engine.config import settings
from label_engine.entities import EntityRef
from label_engine.exceptions import ValidationError
from label_engine.models.assignment import Assignment
from label_engine.models.attribute import Attribute
from label_engine.models.enums import LabelKind, TextFormat, ValueType
from label_engine.services.history import HistoryLog
from label_engine.utils.text import normalize_label
from label_engine.values import (
    AttributeValue,
    ValueRules,
    coerce_value,
    dump_value,
    load_value,
    parse_rules,
    plain_value,
)

logger = logging.getLogger(__name__)


@dataclass
class SetValueResult:
    """Result of a ValueStore.set() call."""

    success: bool
    attribute: Attribute | None = None
    value: AttributeValue | None = None
    changed: bool = False
    errors: dict[str, str] = field(default_factory=dict)


class ValueStore:
    """Service for reading and writing typed attribute values.

    Usage:
        async with AsyncSession(engine) as session:
            store = ValueStore(session, HistoryLog(session))
            result = await store.set(ref, "price", ValueType.NUMBER, "19.99")
    """

    def __init__(self, session: AsyncSession, history: HistoryLog | None = None) -> None:
        """Initialize the store with a database session and history log."""
        self._session = session
        self._history = history or HistoryLog(session)

    async def _load(self, ref: EntityRef, key: str, language: str) -> Attribute | None:
        stmt = select(Attribute).where(
            Attribute.tenant_id == ref.tenant_id,
            Attribute.entity_id == ref.entity_id,
            Attribute.key == key,
            Attribute.language == language,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def set(
        self,
        ref: EntityRef,
        key: str,
        value_type: ValueType | str,
        raw: Any,
        *,
        language: str | None = None,
        value_format: TextFormat | str | None = None,
        validation_rules: ValueRules | dict[str, Any] | None = None,
        actor: str = "system:value_store",
        reason: str | None = None,
    ) -> SetValueResult:
        """Validate and upsert one attribute value.

        Args:
            ref: The entity.
            key: Attribute key.
            value_type: Declared type tag.
            raw: Caller input, coerced according to value_type.
            language: Value language (default: settings.default_language).
            value_format: Text subtype; None keeps the stored format.
            validation_rules: Constraints; None keeps the stored rules.
            actor: Recorded on the owning metadata assignment's history.
            reason: Optional history reason.

        Returns:
            SetValueResult. On failure success is False, errors maps each
            failing field to a message and nothing is written.
        """
        language = language or settings.default_language
        key = key.strip()
        if not key:
            return SetValueResult(success=False, errors={"key": "key is required"})

        try:
            value_type = ValueType(value_type)
        except ValueError:
            return SetValueResult(success=False, errors={"type": f"unknown value type: {value_type!r}"})

        existing = await self._load(ref, key, language)

        fmt = value_format
        if fmt is None and existing is not None and existing.value_type == value_type:
            fmt = existing.value_format
        rules_input: ValueRules | dict[str, Any] | None = validation_rules
        if rules_input is None and existing is not None and existing.validation_rules:
            rules_input = existing.validation_rules

        try:
            rules = parse_rules(rules_input)
            value = coerce_value(value_type, raw, value_format=fmt, rules=rules)
        except ValidationError as exc:
            logger.debug("Rejected %s.%s for %s: %s", key, language, ref, exc.errors)
            return SetValueResult(success=False, attribute=existing, errors=exc.errors)

        payload = dump_value(value)
        stored_rules = rules.model_dump(exclude_none=True) if rules is not None else {}
        stored_format = TextFormat(fmt) if fmt is not None else None

        if existing is None:
            attribute = Attribute(
                attribute_id=uuid4(),
                tenant_id=ref.tenant_id,
                entity_id=ref.entity_id,
                key=key,
                language=language,
                value_type=value_type,
                value_format=stored_format,
                payload=payload,
                validation_rules=stored_rules,
            )
            self._session.add(attribute)
            await self._session.flush()
            return SetValueResult(success=True, attribute=attribute, value=value, changed=True)

        old_payload = existing.payload
        changed = old_payload != payload
        existing.value_type = value_type
        existing.value_format = stored_format
        existing.payload = payload
        existing.validation_rules = stored_rules
        await self._session.flush()

        if changed:
            owner = await self._owning_assignment(ref, key, language)
            if owner is not None:
                await self._history.record_value_change(
                    owner,
                    old_payload.get("value"),
                    payload.get("value"),
                    actor=actor,
                    reason=reason,
                )

        return SetValueResult(success=True, attribute=existing, value=value, changed=changed)

    async def _owning_assignment(self, ref: EntityRef, key: str, language: str) -> Assignment | None:
        stmt = select(Assignment).where(
            Assignment.tenant_id == ref.tenant_id,
            Assignment.entity_id == ref.entity_id,
            Assignment.label == normalize_label(key),
            Assignment.kind == LabelKind.METADATA,
            Assignment.language == language,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get(
        self,
        ref: EntityRef,
        key: str,
        language: str | None = None,
    ) -> AttributeValue | None:
        """Return the typed value of one key, or None when unset."""
        attribute = await self._load(ref, key.strip(), language or settings.default_language)
        if attribute is None:
            return None
        return load_value(attribute.payload)

    async def list_attributes(self, ref: EntityRef, language: str | None = None) -> list[Attribute]:
        """All stored attributes of an entity in one language, ordered by key."""
        stmt = (
            select(Attribute)
            .where(
                Attribute.tenant_id == ref.tenant_id,
                Attribute.entity_id == ref.entity_id,
                Attribute.language == (language or settings.default_language),
            )
            .order_by(Attribute.key)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def snapshot(self, ref: EntityRef, language: str | None = None) -> dict[str, Any]:
        """Plain Python values keyed by attribute key, for rule evaluation."""
        return {
            attribute.key: plain_value(load_value(attribute.payload))
            for attribute in await self.list_attributes(ref, language)
        }

    async def delete(self, ref: EntityRef, key: str, language: str | None = None) -> bool:
        """Remove one attribute value. Returns False when nothing was stored."""
        attribute = await self._load(ref, key.strip(), language or settings.default_language)
        if attribute is None:
            return False
        await self._session.delete(attribute)
        await self._session.flush()
        return True
