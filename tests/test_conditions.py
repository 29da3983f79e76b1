"""Tests for rule condition parsing and evaluation."""

from __future__ import annotations

from datetime import date

import pytest

from label_engine.exceptions import RuleEvaluationError, ValidationError
from label_engine.rules.conditions import (
    And,
    Compare,
    Contains,
    condition_fields,
    dump_condition,
    evaluate,
    parse_condition,
)

SNAPSHOT = {
    "name": "Red Cotton Shirt",
    "price": 19.99,
    "in_stock": True,
    "tags": ["summer", "Sale"],
    "released": date(2024, 3, 1),
    "dimensions": {"size": "M"},
    "notes": "",
}


def check(raw: object, snapshot: dict | None = None) -> bool:
    return evaluate(parse_condition(raw), SNAPSHOT if snapshot is None else snapshot)


class TestParsing:
    def test_typed_form(self) -> None:
        condition = parse_condition({"field": "name", "op": "contains", "value": "red"})
        assert condition == Contains(op="contains", field="name", value="red")

    def test_legacy_form_is_rewritten(self) -> None:
        condition = parse_condition({"field": "price", "operator": "greater_than", "value": 10})
        assert condition == Compare(op="gt", field="price", value=10)

    def test_list_means_and(self) -> None:
        condition = parse_condition(
            [
                {"field": "name", "operator": "contains", "value": "red"},
                {"field": "in_stock", "op": "eq", "value": True},
            ]
        )
        assert isinstance(condition, And)
        assert condition_fields(condition) == {"name", "in_stock"}

    def test_canonical_dump(self) -> None:
        dumped = dump_condition(parse_condition({"field": "name", "operator": "equals", "value": "x"}))
        assert dumped == {"op": "eq", "field": "name", "value": "x"}

    @pytest.mark.parametrize(
        "raw",
        [
            {"field": "name", "op": "matches", "value": "x"},
            {"field": "name", "op": "eq", "value": "x", "extra": 1},
            {"op": "contains", "value": "x"},
            {"op": "and", "conditions": []},
            {"field": "tags", "op": "in", "value": []},
            "name contains red",
        ],
    )
    def test_malformed(self, raw: object) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_condition(raw)
        assert all(key.startswith("conditions") for key in exc_info.value.errors)


class TestEvaluation:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ({"field": "name", "op": "contains", "value": "red"}, True),
            ({"field": "name", "op": "contains", "value": "wool"}, False),
            ({"field": "tags", "op": "contains", "value": "sale"}, True),
            ({"field": "name", "op": "eq", "value": "Red Cotton Shirt"}, True),
            ({"field": "name", "op": "ne", "value": "Blue Shirt"}, True),
            ({"field": "price", "op": "gt", "value": 10}, True),
            ({"field": "price", "op": "lte", "value": 19.99}, True),
            ({"field": "price", "op": "lt", "value": 5}, False),
            ({"field": "in_stock", "op": "eq", "value": True}, True),
            ({"field": "in_stock", "op": "eq", "value": 1}, False),
            ({"field": "tags", "op": "in", "value": ["winter", "summer"]}, True),
            ({"field": "price", "op": "in", "value": [19.99, 29.99]}, True),
            ({"field": "released", "op": "gte", "value": "2024-01-01"}, True),
            ({"field": "released", "op": "eq", "value": "2024-03-01"}, True),
            ({"field": "dimensions.size", "op": "eq", "value": "M"}, True),
            ({"field": "name", "op": "exists"}, True),
            ({"field": "notes", "op": "exists"}, False),
        ],
    )
    def test_leaf(self, raw: dict, expected: bool) -> None:
        assert check(raw) is expected

    def test_missing_field_is_false(self) -> None:
        assert check({"field": "colour", "op": "eq", "value": "red"}) is False
        assert check({"field": "colour", "op": "ne", "value": "red"}) is False
        assert check({"field": "dimensions.weight", "op": "exists"}) is False

    def test_boolean_combinators(self) -> None:
        red = {"field": "name", "op": "contains", "value": "red"}
        wool = {"field": "name", "op": "contains", "value": "wool"}
        assert check({"op": "and", "conditions": [red, wool]}) is False
        assert check({"op": "or", "conditions": [red, wool]}) is True
        assert check({"op": "or", "conditions": [wool, {"op": "and", "conditions": [red]}]}) is True

    @pytest.mark.parametrize(
        "raw",
        [
            {"field": "price", "op": "gt", "value": "ten"},
            {"field": "name", "op": "lt", "value": 3},
            {"field": "in_stock", "op": "gt", "value": 0},
            {"field": "price", "op": "contains", "value": "9"},
        ],
    )
    def test_incompatible_types_raise(self, raw: dict) -> None:
        with pytest.raises(RuleEvaluationError):
            check(raw)
