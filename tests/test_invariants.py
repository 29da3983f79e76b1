"""Invariant tests that lock in the design.

These tests ensure the engine keeps its core guarantees:
1. Every value type has exactly one value model and coercer
2. History records business changes, never counters or scores
3. Suggestion status only moves away from pending via compare-and-set
4. Uniqueness lives in the database, not only in Python

Run with: pytest tests/test_invariants.py -v
"""

from __future__ import annotations

import inspect
import typing

from sqlalchemy import Index, UniqueConstraint

from label_engine.engine import ClassificationEngine
from label_engine.models.assignment import Assignment
from label_engine.models.enums import SuggestionStatus, ValueType
from label_engine.models.label import Label
from label_engine.models.rule import Rule
from label_engine.services.history import VOLATILE_FIELDS
from label_engine.services.ledger import AssignmentLedger
from label_engine.services.rules import RuleService
from label_engine.services.value_store import ValueStore
from label_engine.suggestions import pipeline as pipeline_module
from label_engine.values import _COERCERS, AttributeValue


class TestValueTypes:
    """The seven value types map one-to-one onto value models."""

    def test_every_type_has_a_coercer(self) -> None:
        assert set(_COERCERS) == set(ValueType)

    def test_every_type_has_a_model(self) -> None:
        union = typing.get_args(AttributeValue)[0]
        tags = {model.model_fields["type"].default for model in typing.get_args(union)}
        assert tags == {t.value for t in ValueType}

    def test_coercers_build_matching_models(self) -> None:
        for value_type, (_, model) in _COERCERS.items():
            assert model.model_fields["type"].default == value_type.value


class TestHistoryScope:
    """History tracks what an assignment means, not how it is used."""

    def test_volatile_fields_are_assignment_columns(self) -> None:
        columns = {c.key for c in Assignment.__table__.columns}
        assert VOLATILE_FIELDS <= columns

    def test_business_fields_are_tracked(self) -> None:
        tracked = {"label", "kind", "source", "confidence", "is_primary", "is_active", "expires_at"}
        assert not tracked & VOLATILE_FIELDS

    def test_counters_and_scores_are_volatile(self) -> None:
        columns = {c.key for c in Assignment.__table__.columns}
        usage = {c for c in columns if c.endswith(("_count", "_score"))}
        assert usage <= VOLATILE_FIELDS


class TestSuggestionTransitions:
    """Pending is the only status a suggestion can leave."""

    def test_status_only_written_through_guarded_updates(self) -> None:
        source = inspect.getsource(pipeline_module)
        assert ".status = " not in source
        assert source.count("Suggestion.status == SuggestionStatus.PENDING") >= 2

    def test_terminal_statuses(self) -> None:
        terminal = set(SuggestionStatus) - {SuggestionStatus.PENDING}
        assert terminal == {
            SuggestionStatus.ACCEPTED,
            SuggestionStatus.REJECTED,
            SuggestionStatus.EXPIRED,
        }


class TestDatabaseConstraints:
    """Races are settled by the database, so the constraints must exist."""

    @staticmethod
    def _unique_columns(model: type) -> list[tuple[str, ...]]:
        found = []
        for arg in model.__table__.constraints | set(model.__table__.indexes):
            if isinstance(arg, UniqueConstraint) or (isinstance(arg, Index) and arg.unique):
                found.append(tuple(c.name for c in arg.columns))
        return found

    def test_single_primary_index(self) -> None:
        [index] = [i for i in Assignment.__table__.indexes if i.name == "uq_assignments_single_primary"]
        assert index.unique
        assert [c.name for c in index.columns] == ["tenant_id", "entity_id", "kind"]
        assert index.dialect_options["postgresql"]["where"] is not None
        assert index.dialect_options["sqlite"]["where"] is not None

    def test_one_row_per_assignment_key(self) -> None:
        assert ("tenant_id", "entity_id", "label", "kind", "language") in self._unique_columns(Assignment)

    def test_vocabulary_and_rule_names_unique_per_tenant(self) -> None:
        assert ("tenant_id", "kind", "slug") in self._unique_columns(Label)
        assert ("tenant_id", "name") in self._unique_columns(Rule)


class TestTransactionOwnership:
    """Services never commit; the facade owns the transaction."""

    def test_services_do_not_commit(self) -> None:
        for service in (AssignmentLedger, ValueStore, RuleService, pipeline_module.SuggestionPipeline):
            source = inspect.getsource(service)
            assert "self._session.commit" not in source, f"{service.__name__} commits"

    def test_facade_opens_transactions(self) -> None:
        assert "session.begin()" in inspect.getsource(ClassificationEngine._transact)
