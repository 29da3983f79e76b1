"""Condition trees for classification rules.

A rule's conditions are stored as JSON and parsed once into a typed tree
(a pydantic discriminated union on "op"):

    {"op": "and", "conditions": [
        {"field": "name", "op": "contains", "value": "red"},
        {"field": "material", "op": "eq", "value": "cotton"},
    ]}

The flat legacy form {"field": ..., "operator": "contains", "value": ...}
is accepted and rewritten to the typed form. A top-level list means "and".

Evaluation runs against a plain snapshot (attribute key → Python value).
A missing field makes its leaf false. A comparison between incompatible
types raises RuleEvaluationError instead of guessing.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from label_engine.exceptions import RuleEvaluationError, ValidationError
from label_engine.utils.text import contains_text

LEGACY_OPERATORS = {
    "equals": "eq",
    "equal": "eq",
    "=": "eq",
    "==": "eq",
    "not_equals": "ne",
    "!=": "ne",
    "contains": "contains",
    "in": "in",
    "greater_than": "gt",
    ">": "gt",
    "greater_than_or_equal": "gte",
    ">=": "gte",
    "less_than": "lt",
    "<": "lt",
    "less_than_or_equal": "lte",
    "<=": "lte",
    "exists": "exists",
}

_MISSING = object()


class _Node(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Compare(_Node):
    op: Literal["eq", "ne", "gt", "gte", "lt", "lte"]
    field: str = Field(min_length=1)
    value: Any


class Contains(_Node):
    op: Literal["contains"]
    field: str = Field(min_length=1)
    value: str | int | float


class In(_Node):
    op: Literal["in"]
    field: str = Field(min_length=1)
    value: list[Any] = Field(min_length=1)


class Exists(_Node):
    op: Literal["exists"]
    field: str = Field(min_length=1)


class And(_Node):
    op: Literal["and"]
    conditions: list[Condition] = Field(min_length=1)


class Or(_Node):
    op: Literal["or"]
    conditions: list[Condition] = Field(min_length=1)


Condition = Annotated[
    Union[Compare, Contains, In, Exists, And, Or],
    Field(discriminator="op"),
]

And.model_rebuild()
Or.model_rebuild()

_CONDITION_ADAPTER: TypeAdapter[Condition] = TypeAdapter(Condition)


# -----------------------------------------------------------------------------
# Parsing
# -----------------------------------------------------------------------------


def _normalize(raw: Any) -> Any:
    """Rewrite legacy and shorthand forms into the typed form."""
    if isinstance(raw, list):
        return {"op": "and", "conditions": [_normalize(item) for item in raw]}
    if not isinstance(raw, dict):
        return raw

    node = dict(raw)
    if "op" not in node and "operator" in node:
        operator = str(node.pop("operator")).strip().lower()
        node["op"] = LEGACY_OPERATORS.get(operator, operator)
    if node.get("op") in ("and", "or") and isinstance(node.get("conditions"), list):
        node["conditions"] = [_normalize(item) for item in node["conditions"]]
    return node


def parse_condition(raw: Any) -> Condition:
    """Parse a stored condition tree.

    Raises:
        ValidationError: With one entry per malformed node, keyed by its
            location under "conditions".
    """
    try:
        return _CONDITION_ADAPTER.validate_python(_normalize(raw))
    except PydanticValidationError as exc:
        raise ValidationError(
            {
                ".".join(["conditions", *(str(p) for p in err["loc"])]): err["msg"]
                for err in exc.errors()
            }
        ) from exc


def dump_condition(condition: Condition) -> dict[str, Any]:
    """Serialize a parsed tree back to its canonical JSON form."""
    return condition.model_dump(mode="json")


def condition_fields(condition: Condition) -> set[str]:
    """Every field a tree reads."""
    if isinstance(condition, (And, Or)):
        fields: set[str] = set()
        for child in condition.conditions:
            fields |= condition_fields(child)
        return fields
    return {condition.field}


# -----------------------------------------------------------------------------
# Evaluation
# -----------------------------------------------------------------------------


def _resolve(snapshot: dict[str, Any], field: str) -> Any:
    """Look up a field, following dotted paths into structured values."""
    if field in snapshot:
        return snapshot[field]
    current: Any = snapshot
    for part in field.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_temporal(value: Any, like: date) -> date | None:
    if isinstance(value, type(like)):
        return value
    if isinstance(value, str):
        try:
            if isinstance(like, datetime):
                return datetime.fromisoformat(value)
            return date.fromisoformat(value)
        except ValueError:
            return None
    return None


def _ordered_pair(actual: Any, expected: Any, field: str) -> tuple[Any, Any]:
    if _is_number(actual) and _is_number(expected):
        return actual, expected
    if isinstance(actual, date):
        other = _as_temporal(expected, actual)
        if other is not None:
            return actual, other
    if isinstance(actual, str) and isinstance(expected, str):
        return actual, expected
    raise RuleEvaluationError(
        None,
        f"cannot compare {field}={actual!r} ({type(actual).__name__}) "
        f"with {expected!r} ({type(expected).__name__})",
    )


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return actual is expected
    if isinstance(actual, date) and isinstance(expected, str):
        return _as_temporal(expected, actual) == actual
    return actual == expected


def evaluate(condition: Condition, snapshot: dict[str, Any]) -> bool:
    """Evaluate a parsed tree against an entity snapshot.

    Raises:
        RuleEvaluationError: A comparison between incompatible types.
    """
    if isinstance(condition, And):
        return all(evaluate(child, snapshot) for child in condition.conditions)
    if isinstance(condition, Or):
        return any(evaluate(child, snapshot) for child in condition.conditions)

    actual = _resolve(snapshot, condition.field)
    if actual is _MISSING or actual is None:
        return False

    if isinstance(condition, Exists):
        return not (isinstance(actual, (str, list, dict)) and len(actual) == 0)

    if isinstance(condition, Contains):
        needle = str(condition.value)
        if isinstance(actual, str):
            return contains_text(actual, needle)
        if isinstance(actual, list):
            return any(str(item).casefold() == needle.casefold() for item in actual)
        raise RuleEvaluationError(
            None, f"contains needs text or an array, {condition.field} is {type(actual).__name__}"
        )

    if isinstance(condition, In):
        if isinstance(actual, list):
            return any(_equals(item, v) for item in actual for v in condition.value)
        return any(_equals(actual, v) for v in condition.value)

    if condition.op == "eq":
        return _equals(actual, condition.value)
    if condition.op == "ne":
        return not _equals(actual, condition.value)

    left, right = _ordered_pair(actual, condition.value, condition.field)
    try:
        if condition.op == "gt":
            return left > right
        if condition.op == "gte":
            return left >= right
        if condition.op == "lt":
            return left < right
        return left <= right
    except TypeError as exc:
        raise RuleEvaluationError(None, f"cannot compare {condition.field}: {exc}") from exc
