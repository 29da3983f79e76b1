"""Entity references and the collaborator-facing entity interfaces.

The engine never sees an entity's schema. Collaborators (product, order,
invoice services) identify entities by EntityRef and, when asked, supply the
name/description text used for suggestion scoring.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from label_engine.models.enums import LabelKind


@dataclass(frozen=True)
class EntityRef:
    """Opaque entity identifier plus its owning tenant (store)."""

    tenant_id: str
    entity_id: str

    def __str__(self) -> str:
        return f"{self.tenant_id}/{self.entity_id}"


@dataclass(frozen=True)
class EntityText:
    """Free text of an entity used for text-matching."""

    name: str | None = None
    description: str | None = None


class EntityTextProvider(Protocol):
    """Supplies entity text on demand (getEntityText)."""

    async def get_entity_text(self, ref: EntityRef) -> EntityText: ...


AssignmentListener = Callable[[EntityRef, str, "LabelKind"], Awaitable[None] | None]
"""Called after commit for every assignment that changed (onAssignmentChanged)."""
