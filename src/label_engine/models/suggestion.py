"""Suggestion model for non-binding candidate assignments."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from label_engine.models.base import Base, JSONType
from label_engine.models.enums import LabelKind, SuggestionStatus
from label_engine.utils.clock import utcnow


class Suggestion(Base):
    """A scored candidate assignment awaiting a human decision.

    Lifecycle: pending → accepted | rejected | expired. Once a suggestion
    leaves pending, its status, feedback and review timestamp never change.
    All transitions are compare-and-set on status = pending.
    """

    __tablename__ = "suggestions"
    __table_args__ = (
        Index("ix_suggestions_entity_status", "tenant_id", "entity_id", "status"),
    )

    suggestion_id: Mapped[UUID] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255))
    entity_id: Mapped[str] = mapped_column(String(255))
    label: Mapped[str] = mapped_column(String(255))
    kind: Mapped[LabelKind] = mapped_column()
    language: Mapped[str] = mapped_column(String(16))

    source: Mapped[str] = mapped_column(String(100))
    """Who proposed it: a scorer name or "rule:<rule name>"."""

    confidence: Mapped[float] = mapped_column(Float)
    relevance: Mapped[float] = mapped_column(Float, default=0.0)
    reasoning: Mapped[str | None] = mapped_column(Text)
    supporting_data: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    status: Mapped[SuggestionStatus] = mapped_column(default=SuggestionStatus.PENDING, index=True)

    # Review
    feedback_score: Mapped[int | None] = mapped_column(Integer)
    """Reviewer feedback in {-1, 0, 1}."""

    feedback_comment: Mapped[str | None] = mapped_column(Text)
    reviewed_by: Mapped[str | None] = mapped_column(String(255))
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    assignment_id: Mapped[UUID | None] = mapped_column()
    """Assignment created when the suggestion was accepted."""

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
