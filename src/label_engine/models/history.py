"""AssignmentHistory model: the append-only audit trail."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import BigInteger, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from label_engine.models.base import Base, JSONType
from label_engine.models.enums import ChangeType, LabelKind
from label_engine.utils.clock import utcnow


class AssignmentHistory(Base):
    """One record per mutating operation on an assignment.

    Rows are inserted by HistoryLog and never updated or deleted.
    assignment_id is not a foreign key: purged assignments keep their
    history. history_id is monotonic and orders records per assignment.
    """

    __tablename__ = "assignment_history"
    __table_args__ = (
        Index("ix_assignment_history_entity", "tenant_id", "entity_id"),
    )

    history_id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    assignment_id: Mapped[UUID | None] = mapped_column(index=True)
    tenant_id: Mapped[str] = mapped_column(String(255))
    entity_id: Mapped[str] = mapped_column(String(255))
    label: Mapped[str] = mapped_column(String(255))
    kind: Mapped[LabelKind] = mapped_column()

    change_type: Mapped[ChangeType] = mapped_column(index=True)
    changed_fields: Mapped[list[str]] = mapped_column(JSONType, default=list)
    old_values: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    new_values: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    actor: Mapped[str] = mapped_column(String(255))
    """Who made the change: user:<id>, rule:<name>, suggestion:<id> or system:<job>."""

    reason: Mapped[str | None] = mapped_column(String(1024))
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
