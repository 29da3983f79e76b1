"""Label model for the controlled tag/category vocabulary."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from label_engine.models.base import Base, JSONType
from label_engine.models.enums import LabelKind
from label_engine.utils.clock import utcnow


class Label(Base):
    """A vocabulary entry that entities can be tagged or categorized with.

    Assignments refer to labels by slug. The vocabulary is the candidate
    set for the suggestion pipeline.
    """

    __tablename__ = "labels"
    __table_args__ = (UniqueConstraint("tenant_id", "kind", "slug", name="uq_labels_tenant_kind_slug"),)

    label_id: Mapped[UUID] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), index=True)
    kind: Mapped[LabelKind] = mapped_column()
    slug: Mapped[str] = mapped_column(String(255))
    """Normalized name; what assignments store."""

    name: Mapped[str] = mapped_column(String(255))
    """Display name as entered."""

    description: Mapped[str | None] = mapped_column(Text)
    color: Mapped[str | None] = mapped_column(String(7))
    aliases: Mapped[list[str]] = mapped_column(JSONType, default=list)
    """Alternative spellings the suggestion scorers also match on."""

    is_active: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
