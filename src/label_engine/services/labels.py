"""Label vocabulary service.

Tags and categories come from a per-tenant controlled vocabulary. Labels
are identified by their normalized slug; creating a label whose slug
already exists returns the existing row instead of duplicating it.
"""

from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from label_engine.exceptions import NotFoundError, ValidationError
from label_engine.models.enums import LabelKind, TextFormat
from label_engine.models.label import Label
from label_engine.utils.text import normalize_label
from label_engine.values import FORMAT_PATTERNS


class LabelService:
    """Service for managing the label vocabulary.

    Usage:
        async with AsyncSession(engine) as session:
            service = LabelService(session)
            label, created = await service.create_label("store-1", LabelKind.TAG, "Summer Sale")
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the service with a database session."""
        self._session = session

    async def create_label(
        self,
        tenant_id: str,
        kind: LabelKind,
        name: str,
        *,
        description: str | None = None,
        color: str | None = None,
        aliases: list[str] | None = None,
    ) -> tuple[Label, bool]:
        """Get an existing label or create a new one.

        Args:
            tenant_id: Owning tenant.
            kind: TAG or CATEGORY (METADATA keys are not vocabulary).
            name: Display name; normalized into the slug.
            description: Optional description, also used for text matching.
            color: Optional hex display colour (#RRGGBB).
            aliases: Optional alternative spellings.

        Returns:
            Tuple of (Label, created_flag).

        Raises:
            ValidationError: On an empty name, metadata kind or bad colour.
        """
        errors: dict[str, Any] = {}
        slug = normalize_label(name)
        if not slug:
            errors["name"] = "name must contain at least one letter or digit"
        if kind is LabelKind.METADATA:
            errors["kind"] = "metadata keys are not vocabulary labels"
        if color is not None and FORMAT_PATTERNS[TextFormat.COLOR].match(color) is None:
            errors["color"] = "colour must be a hex value like #1A2B3C"
        if errors:
            raise ValidationError(errors)

        existing = await self.get_label(tenant_id, kind, slug)
        if existing is not None:
            return existing, False

        label = Label(
            label_id=uuid4(),
            tenant_id=tenant_id,
            kind=kind,
            slug=slug,
            name=name.strip(),
            description=description,
            color=color,
            aliases=[a.strip() for a in aliases or [] if a.strip()],
            is_active=True,
        )
        self._session.add(label)
        await self._session.flush()
        return label, True

    async def get_label(self, tenant_id: str, kind: LabelKind, slug: str) -> Label | None:
        """Find a label by tenant, kind and (normalized) slug."""
        stmt = select(Label).where(
            Label.tenant_id == tenant_id,
            Label.kind == kind,
            Label.slug == normalize_label(slug),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def require_label(self, tenant_id: str, kind: LabelKind, slug: str) -> Label:
        """Like get_label() but raises NotFoundError for unknown or inactive labels."""
        label = await self.get_label(tenant_id, kind, slug)
        if label is None or not label.is_active:
            raise NotFoundError(f"{kind.value} label", f"{tenant_id}/{slug}")
        return label

    async def list_labels(
        self,
        tenant_id: str,
        *,
        kind: LabelKind | None = None,
        active_only: bool = True,
    ) -> list[Label]:
        """List a tenant's labels ordered by kind and slug."""
        stmt = select(Label).where(Label.tenant_id == tenant_id)
        if kind is not None:
            stmt = stmt.where(Label.kind == kind)
        if active_only:
            stmt = stmt.where(Label.is_active.is_(True))
        stmt = stmt.order_by(Label.kind, Label.slug)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def deactivate_label(self, tenant_id: str, kind: LabelKind, slug: str) -> Label | None:
        """Retire a label from the vocabulary. Existing assignments are untouched."""
        label = await self.get_label(tenant_id, kind, slug)
        if label is None:
            return None
        label.is_active = False
        return label
