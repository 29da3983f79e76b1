"""Rule model for condition→action classification rules."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import DateTime, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from label_engine.models.base import Base, JSONType
from label_engine.models.enums import ExecutionMode, LabelKind, RuleAction
from label_engine.utils.clock import utcnow


class Rule(Base):
    """A stored condition→action pair evaluated by the rule engine.

    conditions holds the raw JSON condition tree; it is parsed and
    validated by RuleService before it is saved, and parsed again (once per
    apply) by the engine. Rules with the same priority run in creation order.
    """

    __tablename__ = "rules"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_rules_tenant_name"),)

    rule_id: Mapped[UUID] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)

    conditions: Mapped[dict[str, Any]] = mapped_column(JSONType)
    """Condition tree, e.g. {"field": "name", "op": "contains", "value": "red"}."""

    action: Mapped[RuleAction] = mapped_column()
    kind: Mapped[LabelKind] = mapped_column()
    """Kind of the target labels (assign/remove/require)."""

    target_labels: Mapped[list[str]] = mapped_column(JSONType, default=list)
    """Label slugs, or attribute keys for modify_value."""

    parameters: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    """Action parameters; modify_value uses {"type": ..., "value": ...}."""

    is_primary: Mapped[bool] = mapped_column(default=False)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    confidence: Mapped[float] = mapped_column(Float)
    execution_mode: Mapped[ExecutionMode] = mapped_column(default=ExecutionMode.AUTOMATIC)
    is_active: Mapped[bool] = mapped_column(default=True)

    # Execution tracking
    matches_count: Mapped[int] = mapped_column(Integer, default=0)
    last_executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
