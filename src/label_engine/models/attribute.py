"""Attribute model for typed key/value data on entities."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from label_engine.models.base import Base, JSONType
from label_engine.models.enums import TextFormat, ValueType
from label_engine.utils.clock import utcnow


class Attribute(Base):
    """One typed value for one key of one entity, per language.

    The value is stored as a single JSON payload produced by the matching
    value model in label_engine.values, so there is never more than one
    populated slot. value_type is denormalized for filtering.
    """

    __tablename__ = "attribute_values"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "entity_id", "key", "language", name="uq_attribute_values_entity_key"
        ),
    )

    attribute_id: Mapped[UUID] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), index=True)
    entity_id: Mapped[str] = mapped_column(String(255), index=True)
    key: Mapped[str] = mapped_column(String(255), index=True)
    language: Mapped[str] = mapped_column(String(16))

    value_type: Mapped[ValueType] = mapped_column()
    value_format: Mapped[TextFormat | None] = mapped_column()
    """Specialised text subtype (url, email, phone, color)."""

    payload: Mapped[dict[str, Any]] = mapped_column(JSONType)
    """Serialized value model: {"type": ..., "value": ...}."""

    validation_rules: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    """Persisted constraints re-applied on every later set()."""

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
