"""History log: the append-only audit trail for assignments.

Every ledger mutation passes its before/after snapshots through
HistoryLog.record() inside the same transaction as the write itself. The
log stores only the fields that differ, and derives the change type from
which fields changed:

- no previous state            → created
- no new state                 → deleted
- is_active false → true       → activated
- is_active true → false       → deactivated
- anything else                → updated

Volatile bookkeeping (timestamps, usage counters, derived scores) is left
out of snapshots, so usage tracking never produces history rows.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from label_engine.entities import EntityRef
from label_engine.models.assignment import Assignment
from label_engine.models.enums import ChangeType, LabelKind
from label_engine.models.history import AssignmentHistory
from label_engine.utils.clock import as_utc
from label_engine.utils.text import normalize_label

logger = logging.getLogger(__name__)

VOLATILE_FIELDS = frozenset(
    {
        "updated_at",
        "last_interaction_at",
        "usage_count",
        "click_count",
        "view_count",
        "search_count",
        "conversion_count",
        "performance_score",
        "relevance_score",
        "popularity_score",
    }
)

Snapshot = dict[str, Any]


def _jsonable(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def snapshot_assignment(assignment: Assignment) -> Snapshot:
    """JSON-safe image of an assignment's tracked columns."""
    mapper = inspect(Assignment)
    return {
        attr.key: _jsonable(getattr(assignment, attr.key))
        for attr in mapper.column_attrs
        if attr.key not in VOLATILE_FIELDS
    }


def diff_snapshots(
    before: Snapshot | None,
    after: Snapshot | None,
) -> tuple[list[str], dict[str, Any], dict[str, Any]]:
    """Field-by-field diff of two snapshots.

    Returns:
        Tuple of (changed_fields, old_values, new_values), restricted to the
        fields that differ. Fields are sorted for stable output.
    """
    before = before or {}
    after = after or {}
    changed = sorted(
        key for key in before.keys() | after.keys() if before.get(key) != after.get(key)
    )
    old_values = {key: before[key] for key in changed if key in before}
    new_values = {key: after[key] for key in changed if key in after}
    return changed, old_values, new_values


def derive_change_type(before: Snapshot | None, after: Snapshot | None) -> ChangeType:
    """Classify a change from its snapshots."""
    if before is None:
        return ChangeType.CREATED
    if after is None:
        return ChangeType.DELETED
    was_active = bool(before.get("is_active"))
    is_active = bool(after.get("is_active"))
    if not was_active and is_active:
        return ChangeType.ACTIVATED
    if was_active and not is_active:
        return ChangeType.DEACTIVATED
    return ChangeType.UPDATED


class HistoryLog:
    """Append-only writer and reader for AssignmentHistory.

    There is no update or delete path; rows outlive the assignments they
    describe.

    Usage:
        async with AsyncSession(engine) as session:
            log = HistoryLog(session)
            await log.record(assignment, before, snapshot_assignment(assignment), actor="user:7")
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the log with a database session."""
        self._session = session

    async def record(
        self,
        assignment: Assignment,
        before: Snapshot | None,
        after: Snapshot | None,
        *,
        actor: str,
        reason: str | None = None,
    ) -> AssignmentHistory | None:
        """Append one history row for an assignment mutation.

        Args:
            assignment: The assignment (its identity columns label the row).
            before: Snapshot before the mutation, None for a creation.
            after: Snapshot after the mutation, None for a hard delete.
            actor: Who made the change.
            reason: Optional free-text reason.

        Returns:
            The new history row, or None when nothing tracked changed.
        """
        changed, old_values, new_values = diff_snapshots(before, after)
        if not changed:
            return None

        change_type = derive_change_type(before, after)
        entry = AssignmentHistory(
            assignment_id=assignment.assignment_id,
            tenant_id=assignment.tenant_id,
            entity_id=assignment.entity_id,
            label=assignment.label,
            kind=assignment.kind,
            change_type=change_type,
            changed_fields=changed,
            old_values=old_values,
            new_values=new_values,
            actor=actor,
            reason=reason,
        )
        self._session.add(entry)
        await self._session.flush()

        logger.debug(
            "History %s for %s/%s %s:%s fields=%s",
            change_type.value,
            assignment.tenant_id,
            assignment.entity_id,
            assignment.kind.value,
            assignment.label,
            changed,
        )
        return entry

    async def record_value_change(
        self,
        assignment: Assignment,
        old_value: Any,
        new_value: Any,
        *,
        actor: str,
        reason: str | None = None,
    ) -> AssignmentHistory | None:
        """Append an `updated` row when the metadata value behind an assignment changes."""
        if old_value == new_value:
            return None
        entry = AssignmentHistory(
            assignment_id=assignment.assignment_id,
            tenant_id=assignment.tenant_id,
            entity_id=assignment.entity_id,
            label=assignment.label,
            kind=assignment.kind,
            change_type=ChangeType.UPDATED,
            changed_fields=["value"],
            old_values={"value": old_value},
            new_values={"value": new_value},
            actor=actor,
            reason=reason,
        )
        self._session.add(entry)
        await self._session.flush()
        return entry

    async def for_assignment(self, assignment_id: UUID) -> list[AssignmentHistory]:
        """All history rows of one assignment, oldest first."""
        stmt = (
            select(AssignmentHistory)
            .where(AssignmentHistory.assignment_id == assignment_id)
            .order_by(AssignmentHistory.history_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def for_entity(
        self,
        ref: EntityRef,
        *,
        kind: LabelKind | None = None,
        label: str | None = None,
        limit: int | None = None,
    ) -> list[AssignmentHistory]:
        """History rows of an entity, oldest first.

        Args:
            ref: The entity.
            kind: Optional filter on label kind.
            label: Optional filter on label slug.
            limit: Optional cap on rows returned.
        """
        stmt = select(AssignmentHistory).where(
            AssignmentHistory.tenant_id == ref.tenant_id,
            AssignmentHistory.entity_id == ref.entity_id,
        )
        if kind is not None:
            stmt = stmt.where(AssignmentHistory.kind == kind)
        if label is not None:
            stmt = stmt.where(AssignmentHistory.label == normalize_label(label))
        stmt = stmt.order_by(AssignmentHistory.history_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
