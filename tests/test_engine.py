"""Tests for the ClassificationEngine facade: transactions, locking, retries and listeners.

Every call runs in its own committed unit of work, so these tests build
engines from `session_factory` and never share `db_session`.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from label_engine.engine import ClassificationEngine, EntityLocks
from label_engine.entities import EntityRef, EntityText
from label_engine.exceptions import ConflictError, NotFoundError, ValidationError
from label_engine.models.enums import (
    AssignmentSource,
    ChangeType,
    LabelKind,
    SuggestionStatus,
    ValueType,
)
from label_engine.rules.engine import RuleEngine
from label_engine.services.ledger import AssignmentLedger
from label_engine.utils.clock import utcnow

RED = {"field": "name", "op": "contains", "value": "Red"}


def integrity_error() -> IntegrityError:
    return IntegrityError("INSERT INTO assignments", {}, Exception("duplicate key"))


class TestUnitOfWork:
    async def test_values_round_trip(self, engine: ClassificationEngine, ref: EntityRef) -> None:
        result = await engine.set_value(ref, "price", ValueType.NUMBER, "19.99")

        assert result.success and result.changed
        assert (await engine.get_value(ref, "price")).value == 19.99
        assert [a.key for a in await engine.list_values(ref)] == ["price"]
        assert await engine.delete_value(ref, "price") is True
        assert await engine.get_value(ref, "price") is None

    async def test_failed_call_rolls_back(self, engine: ClassificationEngine, ref: EntityRef) -> None:
        with pytest.raises(ValidationError):
            await engine.assign(ref, "red", LabelKind.TAG, confidence=2.0)

        assert await engine.list_assignments(ref) == []
        assert await engine.history(ref) == []

    async def test_category_replacement(self, engine: ClassificationEngine, ref: EntityRef) -> None:
        a = await engine.assign(ref, "A", LabelKind.CATEGORY, is_primary=True)
        b = await engine.assign(ref, "B", LabelKind.CATEGORY, is_primary=True)

        primary = await engine.get_primary(ref, LabelKind.CATEGORY)
        assert primary.assignment_id == b.assignment_id
        assert (await engine.get_assignment(a.assignment_id)).is_primary is False

        rows = await engine.history(ref, label="a")
        assert [r.change_type for r in rows] == [ChangeType.CREATED, ChangeType.UPDATED]
        assert rows[-1].reason == "demoted: b became primary"

    async def test_purge_keeps_history(self, engine: ClassificationEngine, ref: EntityRef) -> None:
        assignment = await engine.assign(ref, "red", LabelKind.TAG)

        with pytest.raises(ConflictError):
            await engine.purge(assignment.assignment_id)
        await engine.unassign(ref, "red", LabelKind.TAG)
        await engine.purge(assignment.assignment_id, actor="user:admin")

        assert await engine.get_assignment(assignment.assignment_id) is None
        rows = await engine.assignment_history(assignment.assignment_id)
        assert [r.change_type for r in rows] == [
            ChangeType.CREATED,
            ChangeType.DEACTIVATED,
            ChangeType.DELETED,
        ]
        with pytest.raises(NotFoundError):
            await engine.purge(assignment.assignment_id)

    async def test_record_usage(self, engine: ClassificationEngine, ref: EntityRef) -> None:
        assignment = await engine.assign(ref, "red", LabelKind.TAG)

        updated = await engine.record_usage(assignment.assignment_id, views=10, clicks=1)

        assert (updated.view_count, updated.click_count) == (10, 1)
        assert len(await engine.assignment_history(assignment.assignment_id)) == 1


class TestConcurrency:
    async def test_concurrent_primaries_leave_one(
        self, engine: ClassificationEngine, ref: EntityRef
    ) -> None:
        await asyncio.gather(
            *(engine.assign(ref, name, LabelKind.CATEGORY, is_primary=True) for name in "ABC")
        )

        categories = await engine.list_assignments(ref, kind=LabelKind.CATEGORY)
        assert len(categories) == 3
        assert sum(a.is_primary for a in categories) == 1
        assert len(engine.locks) == 0

    async def test_lock_registry_does_not_grow(self, engine: ClassificationEngine) -> None:
        for i in range(20):
            await engine.assign(EntityRef("store-1", f"product-{i}"), "red", LabelKind.TAG)

        assert len(engine.locks) == 0

    async def test_lost_race_is_retried(
        self, engine: ClassificationEngine, ref: EntityRef, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        original = AssignmentLedger.assign
        calls: list[str] = []

        async def flaky_assign(self, *args, **kwargs):
            calls.append(args[1])
            if len(calls) == 1:
                raise integrity_error()
            return await original(self, *args, **kwargs)

        monkeypatch.setattr(AssignmentLedger, "assign", flaky_assign)

        assignment = await engine.assign(ref, "red", LabelKind.TAG)

        assert calls == ["red", "red"]
        assert [a.assignment_id for a in await engine.list_assignments(ref)] == [
            assignment.assignment_id
        ]

    async def test_conflict_after_retries(
        self, session_factory, ref: EntityRef, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        engine = ClassificationEngine(session_factory, retry_attempts=2)
        calls: list[str] = []

        async def always_conflicting(self, *args, **kwargs):
            calls.append(args[1])
            raise integrity_error()

        monkeypatch.setattr(AssignmentLedger, "assign", always_conflicting)

        with pytest.raises(ConflictError) as exc_info:
            await engine.assign(ref, "red", LabelKind.TAG)

        assert len(calls) == 2
        assert isinstance(exc_info.value.__cause__, IntegrityError)


class TestListeners:
    async def test_sync_and_async_listeners(self, session_factory, ref: EntityRef) -> None:
        seen: list[tuple[str, LabelKind]] = []
        awaited: list[str] = []

        async def on_changed(changed: EntityRef, label: str, kind: LabelKind) -> None:
            awaited.append(label)

        engine = ClassificationEngine(
            session_factory,
            listeners=[lambda changed, label, kind: seen.append((label, kind))],
        )
        engine.add_listener(on_changed)

        await engine.assign(ref, "A", LabelKind.CATEGORY, is_primary=True)
        await engine.assign(ref, "B", LabelKind.CATEGORY, is_primary=True)

        assert seen == [
            ("a", LabelKind.CATEGORY),
            ("a", LabelKind.CATEGORY),
            ("b", LabelKind.CATEGORY),
        ]
        assert awaited == ["a", "a", "b"]

    async def test_one_notification_per_label(self, session_factory, ref: EntityRef) -> None:
        seen: list[str] = []
        engine = ClassificationEngine(
            session_factory, listeners=[lambda changed, label, kind: seen.append(label)]
        )
        await engine.create_rule(
            "store-1",
            "red-then-remove",
            conditions=RED,
            action="assign",
            kind=LabelKind.TAG,
            target_labels=["red"],
            priority=10,
        )
        await engine.create_rule(
            "store-1",
            "remove-red",
            conditions=RED,
            action="remove",
            kind=LabelKind.TAG,
            target_labels=["red"],
        )

        await engine.apply(ref, {"name": "Red Shirt"})

        assert seen == ["red"]

    async def test_no_notification_without_change(
        self, session_factory, ref: EntityRef
    ) -> None:
        seen: list[str] = []
        engine = ClassificationEngine(
            session_factory, listeners=[lambda changed, label, kind: seen.append(label)]
        )

        await engine.assign(ref, "red", LabelKind.TAG)
        await engine.assign(ref, "red", LabelKind.TAG)
        with pytest.raises(ValidationError):
            await engine.assign(ref, "blue", LabelKind.TAG, confidence=-1)

        assert seen == ["red"]

    async def test_failing_listener_is_logged(
        self, session_factory, ref: EntityRef, caplog: pytest.LogCaptureFixture
    ) -> None:
        def broken(changed: EntityRef, label: str, kind: LabelKind) -> None:
            raise RuntimeError("search index unavailable")

        seen: list[str] = []
        engine = ClassificationEngine(
            session_factory,
            listeners=[broken, lambda changed, label, kind: seen.append(label)],
        )

        with caplog.at_level(logging.ERROR, logger="label_engine.engine"):
            assignment = await engine.assign(ref, "red", LabelKind.TAG)

        assert assignment.is_active
        assert seen == ["red"]
        assert "Assignment listener failed" in caplog.text


class TestRules:
    async def test_red_cotton_shirt(self, engine: ClassificationEngine) -> None:
        e1 = EntityRef("store-1", "E1")
        await engine.set_value(e1, "name", ValueType.TEXT, "Red Cotton Shirt")
        rule = await engine.create_rule(
            "store-1",
            "R1",
            conditions=RED,
            action="assign",
            kind=LabelKind.TAG,
            target_labels=["red"],
            priority=10,
        )

        first = await engine.notify_entity_changed(e1)
        second = await engine.notify_entity_changed(e1)

        assert first.matched_rules == second.matched_rules == ["R1"]
        assert len(first.created_ids) == 1 and second.created_ids == []
        [red] = await engine.list_assignments(e1)
        assert (red.label, red.source, red.confidence) == ("red", AssignmentSource.RULE, 0.8)
        assert len(await engine.history(e1)) == 1
        [stored] = await engine.list_rules("store-1")
        assert stored.rule_id == rule.rule_id
        assert stored.matches_count == 2

    async def test_apply_batch_isolates_failures(
        self, engine: ClassificationEngine, session_factory, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await engine.create_rule(
            "store-1",
            "R1",
            conditions=RED,
            action="assign",
            kind=LabelKind.TAG,
            target_labels=["red"],
        )
        original = RuleEngine.apply

        async def apply_or_fail(self, ref, *args, **kwargs):
            if ref.entity_id == "bad":
                raise ConflictError("simulated")
            return await original(self, ref, *args, **kwargs)

        monkeypatch.setattr(RuleEngine, "apply", apply_or_fail)
        items = [
            (EntityRef("store-1", "good-1"), {"name": "Red Shirt"}),
            (EntityRef("store-1", "bad"), {"name": "Red Shirt"}),
            (EntityRef("store-1", "good-2"), {"name": "Blue Shirt"}),
        ]

        batch = await ClassificationEngine(session_factory, batch_chunk_size=2).apply_batch(items)

        assert sorted(batch.results) == ["store-1/good-1", "store-1/good-2"]
        assert [(f.item, f.error) for f in batch.failures] == [("store-1/bad", "ConflictError")]
        assert len(await engine.list_assignments(EntityRef("store-1", "good-1"))) == 1
        assert await engine.list_assignments(EntityRef("store-1", "good-2")) == []

    async def test_apply_rule_by_id(self, engine: ClassificationEngine, ref: EntityRef) -> None:
        rule = await engine.create_rule(
            "store-1",
            "on-demand",
            conditions=RED,
            action="assign",
            kind=LabelKind.TAG,
            target_labels=["red"],
            execution_mode="manual",
        )

        assert (await engine.apply(ref, {"name": "Red Shirt"})).matched_rules == []
        assert (await engine.apply_rule(rule.rule_id, ref, {"name": "Red Shirt"})).matched_rules == [
            "on-demand"
        ]

        await engine.deactivate_rule(rule.rule_id)
        assert await engine.list_rules("store-1") == []


class TestSuggestions:
    async def _vocabulary(self, engine: ClassificationEngine) -> None:
        await engine.create_label("store-1", LabelKind.TAG, "Red")
        await engine.create_label("store-1", LabelKind.TAG, "Wool")
        await engine.create_label("store-1", LabelKind.CATEGORY, "Shirts", aliases=["shirt"])

    async def test_generate_from_stored_text(self, engine: ClassificationEngine, ref: EntityRef) -> None:
        await self._vocabulary(engine)
        await engine.set_value(ref, "name", ValueType.TEXT, "Red Cotton Shirt")

        result = await engine.generate(ref)

        pending = await engine.pending_suggestions(ref)
        assert {s.suggestion_id for s in pending} == set(result.suggestion_ids)
        assert sorted((s.kind, s.label) for s in pending) == [
            (LabelKind.CATEGORY, "shirts"),
            (LabelKind.TAG, "red"),
        ]

    async def test_accept_promotes(self, session_factory, ref: EntityRef) -> None:
        seen: list[str] = []
        engine = ClassificationEngine(
            session_factory, listeners=[lambda changed, label, kind: seen.append(label)]
        )
        await self._vocabulary(engine)
        result = await engine.generate(ref, EntityText(name="Red jumper"), kinds=[LabelKind.TAG])
        [suggestion_id] = result.suggestion_ids

        resolution = await engine.resolve(suggestion_id, "accept", feedback_score=1, reviewer="ana")

        assert resolution.applied
        assert resolution.status is SuggestionStatus.ACCEPTED
        assignment = await engine.get_assignment(resolution.assignment_id)
        assert (assignment.label, assignment.source) == ("red", AssignmentSource.SUGGESTION)
        assert seen == ["red"]
        assert (await engine.get_suggestion(suggestion_id)).assignment_id == assignment.assignment_id

        again = await engine.resolve(suggestion_id, "reject")
        assert not again.applied
        assert again.reason == "already accepted"

    async def test_sweep_then_resolve(self, engine: ClassificationEngine, ref: EntityRef) -> None:
        await self._vocabulary(engine)
        result = await engine.generate(ref, EntityText(name="Red jumper"), kinds=[LabelKind.TAG])
        [suggestion_id] = result.suggestion_ids

        swept = await engine.sweep(now=utcnow() + timedelta(days=31))

        assert swept.expired_suggestion_ids == [suggestion_id]
        resolution = await engine.resolve(suggestion_id, "accept")
        assert not resolution.applied
        assert resolution.reason == "already expired"
        assert await engine.list_assignments(ref) == []

    async def test_unknown_suggestion(self, engine: ClassificationEngine) -> None:
        resolution = await engine.resolve(uuid4(), "accept")
        assert (resolution.applied, resolution.reason) == (False, "not found")


class TestSweep:
    async def test_expires_assignments(self, engine: ClassificationEngine, ref: EntityRef) -> None:
        soon = await engine.assign(ref, "sale", LabelKind.TAG, expires_at=utcnow() + timedelta(hours=1))
        await engine.assign(ref, "red", LabelKind.TAG)

        assert (await engine.sweep()).expired_assignment_ids == []
        swept = await engine.sweep(now=utcnow() + timedelta(hours=2))

        assert swept.expired_assignment_ids == [soon.assignment_id]
        assert [a.label for a in await engine.list_assignments(ref)] == ["red"]
        assert (await engine.sweep(now=utcnow() + timedelta(hours=2))).expired_assignment_ids == []


async def _enter(locks: EntityLocks, ref: EntityRef) -> None:
    async with locks.hold(ref):
        pass


class TestEntityLocks:
    """Per-entity locks serialize writers and disappear once idle."""

    async def test_waiters_share_one_lock(self, ref: EntityRef) -> None:
        locks = EntityLocks()
        entered = asyncio.Event()
        release = asyncio.Event()
        order: list[str] = []

        async def first() -> None:
            async with locks.hold(ref):
                order.append("first")
                entered.set()
                await release.wait()

        async def second() -> None:
            await entered.wait()
            async with locks.hold(ref):
                order.append("second")

        tasks = [asyncio.create_task(first()), asyncio.create_task(second())]
        await entered.wait()
        await asyncio.sleep(0)
        assert len(locks) == 1
        assert order == ["first"]

        release.set()
        await asyncio.gather(*tasks)

        assert order == ["first", "second"]
        assert len(locks) == 0

    async def test_other_entities_do_not_wait(self, ref: EntityRef) -> None:
        locks = EntityLocks()

        async with locks.hold(ref):
            await asyncio.wait_for(_enter(locks, EntityRef("store-1", "product-2")), timeout=1)
            assert len(locks) == 1

        assert len(locks) == 0

    async def test_cancelled_waiter_is_forgotten(self, ref: EntityRef) -> None:
        locks = EntityLocks()

        async with locks.hold(ref):
            waiter = asyncio.create_task(_enter(locks, ref))
            await asyncio.sleep(0)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
            assert len(locks) == 1

        assert len(locks) == 0
