"""Assignment model: the binding link between an entity and a label."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, Float, Index, Integer, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from label_engine.models.base import Base
from label_engine.models.enums import AssignmentSource, LabelKind
from label_engine.utils.clock import utcnow


class Assignment(Base):
    """A tag, category or metadata key bound to an entity.

    Key invariants:
    - One row per (tenant, entity, label, kind, language)
    - At most one is_primary row per (tenant, entity, kind); the partial
      unique index turns a lost race into an IntegrityError
    - Rows are deactivated, not deleted; purge() is the only hard delete
    """

    __tablename__ = "assignments"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "entity_id",
            "label",
            "kind",
            "language",
            name="uq_assignments_entity_label_kind",
        ),
        Index(
            "uq_assignments_single_primary",
            "tenant_id",
            "entity_id",
            "kind",
            unique=True,
            postgresql_where=text("is_primary"),
            sqlite_where=text("is_primary"),
        ),
        Index("ix_assignments_entity", "tenant_id", "entity_id", "kind"),
    )

    assignment_id: Mapped[UUID] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255))
    entity_id: Mapped[str] = mapped_column(String(255))
    label: Mapped[str] = mapped_column(String(255), index=True)
    kind: Mapped[LabelKind] = mapped_column()
    language: Mapped[str] = mapped_column(String(16))

    # Provenance
    source: Mapped[AssignmentSource] = mapped_column()
    confidence: Mapped[float] = mapped_column(Float)
    """Certainty that the assignment is correct, in [0, 1]."""

    # Display and lifecycle
    is_primary: Mapped[bool] = mapped_column(default=False)
    is_visible: Mapped[bool] = mapped_column(default=True)
    is_active: Mapped[bool] = mapped_column(default=True)
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    context_type: Mapped[str | None] = mapped_column(String(50))
    """Optional facet the label describes (colour, size, material, ...)."""

    keyword_density: Mapped[float] = mapped_column(Float, default=0.0)
    """Declared keyword density (percent); feeds relevance_score."""

    # Usage counters (volatile: never diffed into history)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    click_count: Mapped[int] = mapped_column(Integer, default=0)
    view_count: Mapped[int] = mapped_column(Integer, default=0)
    search_count: Mapped[int] = mapped_column(Integer, default=0)
    conversion_count: Mapped[int] = mapped_column(Integer, default=0)
    last_interaction_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Derived scores, recomputed on every ledger write
    performance_score: Mapped[float] = mapped_column(Float, default=0.0)
    relevance_score: Mapped[float] = mapped_column(Float, default=0.0)
    popularity_score: Mapped[float] = mapped_column(Float, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
