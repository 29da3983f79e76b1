"""Typed attribute values.

Each ValueType has its own pydantic model; AttributeValue is the
discriminated union over them, so a value always carries exactly one
payload of the shape its type tag promises.

coerce_value() turns raw caller input (strings from an import, JSON from an
API, Python objects from code) into the right model, applying the optional
text format and validation rules. Every failure is reported at once via
ValidationError.errors.
"""

from __future__ import annotations

import json
import math
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from label_engine.exceptions import ValidationError
from label_engine.models.enums import TextFormat, ValueType

BOOLEAN_TRUE = frozenset({"true", "1", "yes"})
BOOLEAN_FALSE = frozenset({"false", "0", "no"})

FORMAT_PATTERNS: dict[TextFormat, re.Pattern[str]] = {
    TextFormat.URL: re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE),
    TextFormat.EMAIL: re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$"),
    TextFormat.PHONE: re.compile(r"^\+?[0-9][0-9 ()\-]{5,19}$"),
    TextFormat.COLOR: re.compile(r"^#[0-9A-Fa-f]{6}$"),
}


class _Value(BaseModel):
    model_config = ConfigDict(frozen=True)


class TextValue(_Value):
    type: Literal["text"] = "text"
    value: str


class NumberValue(_Value):
    type: Literal["number"] = "number"
    value: float


class BooleanValue(_Value):
    type: Literal["boolean"] = "boolean"
    value: bool


class DateValue(_Value):
    type: Literal["date"] = "date"
    value: date


class DateTimeValue(_Value):
    type: Literal["datetime"] = "datetime"
    value: datetime


class StructuredValue(_Value):
    type: Literal["structured"] = "structured"
    value: dict[str, Any] | list[Any]


class ArrayValue(_Value):
    type: Literal["array"] = "array"
    value: list[str]


AttributeValue = Annotated[
    Union[
        TextValue,
        NumberValue,
        BooleanValue,
        DateValue,
        DateTimeValue,
        StructuredValue,
        ArrayValue,
    ],
    Field(discriminator="type"),
]

_VALUE_ADAPTER: TypeAdapter[AttributeValue] = TypeAdapter(AttributeValue)


class ValueRules(BaseModel):
    """Constraints checked on every set() of an attribute.

    Example:
        {"min_length": 3, "max_length": 40, "pattern": "[A-Z]{3}-\\d+"}
    """

    model_config = ConfigDict(extra="forbid")

    min_length: int | None = Field(default=None, ge=0)
    max_length: int | None = Field(default=None, ge=0)
    pattern: str | None = None
    minimum: float | None = None
    maximum: float | None = None
    allowed_values: list[Any] | None = None


# -----------------------------------------------------------------------------
# Serialization
# -----------------------------------------------------------------------------


def dump_value(value: AttributeValue) -> dict[str, Any]:
    """Serialize a value model to its JSON payload."""
    return value.model_dump(mode="json")


def load_value(payload: dict[str, Any]) -> AttributeValue:
    """Rebuild a value model from a stored payload."""
    return _VALUE_ADAPTER.validate_python(payload)


def parse_rules(rules: ValueRules | dict[str, Any] | None) -> ValueRules | None:
    """Validate a rules mapping, reporting bad keys as ValidationError."""
    if rules is None or isinstance(rules, ValueRules):
        return rules
    try:
        parsed = ValueRules.model_validate(rules)
    except PydanticValidationError as exc:
        raise ValidationError(
            {
                "validation_rules." + ".".join(str(p) for p in err["loc"]): err["msg"]
                for err in exc.errors()
            }
        ) from exc
    if parsed.pattern is not None:
        try:
            re.compile(parsed.pattern)
        except re.error as exc:
            raise ValidationError({"validation_rules.pattern": f"invalid regex: {exc}"}) from exc
    return parsed


# -----------------------------------------------------------------------------
# Coercion
# -----------------------------------------------------------------------------


def _coerce_text(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, bool) or not isinstance(raw, (int, float, Decimal)):
        raise ValueError(f"expected text, got {type(raw).__name__}")
    return str(raw)


def _coerce_number(raw: Any) -> float:
    if isinstance(raw, bool):
        raise ValueError("expected a number, got boolean")
    if isinstance(raw, (int, float, Decimal)):
        number = float(raw)
    elif isinstance(raw, str):
        try:
            number = float(raw.strip())
        except ValueError:
            raise ValueError(f"not a number: {raw!r}") from None
    else:
        raise ValueError(f"expected a number, got {type(raw).__name__}")
    if not math.isfinite(number):
        raise ValueError("number must be finite")
    return number


def _coerce_boolean(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, int) and raw in (0, 1):
        return bool(raw)
    if isinstance(raw, str):
        token = raw.strip().lower()
        if token in BOOLEAN_TRUE:
            return True
        if token in BOOLEAN_FALSE:
            return False
    raise ValueError(f"not a boolean (true/false/1/0/yes/no): {raw!r}")


def _coerce_date(raw: Any) -> date:
    if isinstance(raw, datetime):
        raise ValueError("expected a date, got a datetime")
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str):
        try:
            return date.fromisoformat(raw.strip())
        except ValueError:
            raise ValueError(f"not an ISO date: {raw!r}") from None
    raise ValueError(f"expected a date, got {type(raw).__name__}")


def _coerce_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw.strip())
        except ValueError:
            raise ValueError(f"not an ISO datetime: {raw!r}") from None
    raise ValueError(f"expected a datetime, got {type(raw).__name__}")


def _coerce_structured(raw: Any) -> dict[str, Any] | list[Any]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid JSON: {exc.msg}") from None
    if not isinstance(raw, (dict, list)):
        raise ValueError(f"expected a JSON object or array, got {type(raw).__name__}")
    return raw


def _coerce_array(raw: Any) -> list[str]:
    if isinstance(raw, str):
        text = raw.strip()
        if text.startswith("["):
            try:
                raw = json.loads(text)
            except json.JSONDecodeError as exc:
                raise ValueError(f"invalid JSON array: {exc.msg}") from None
        else:
            raw = [item.strip() for item in text.split(",") if item.strip()]
    if not isinstance(raw, (list, tuple)):
        raise ValueError(f"expected a list, got {type(raw).__name__}")
    items: list[str] = []
    for item in raw:
        if isinstance(item, (dict, list)) or item is None:
            raise ValueError("array items must be scalars")
        items.append(str(item).lower() if isinstance(item, bool) else str(item))
    return items


_COERCERS = {
    ValueType.TEXT: (_coerce_text, TextValue),
    ValueType.NUMBER: (_coerce_number, NumberValue),
    ValueType.BOOLEAN: (_coerce_boolean, BooleanValue),
    ValueType.DATE: (_coerce_date, DateValue),
    ValueType.DATETIME: (_coerce_datetime, DateTimeValue),
    ValueType.STRUCTURED: (_coerce_structured, StructuredValue),
    ValueType.ARRAY: (_coerce_array, ArrayValue),
}


def _check_rules(value: AttributeValue, rules: ValueRules) -> dict[str, str]:
    errors: dict[str, str] = {}
    payload = value.value

    if isinstance(value, TextValue):
        if rules.min_length is not None and len(payload) < rules.min_length:
            errors["min_length"] = f"shorter than {rules.min_length} characters"
        if rules.max_length is not None and len(payload) > rules.max_length:
            errors["max_length"] = f"longer than {rules.max_length} characters"
        if rules.pattern is not None and re.fullmatch(rules.pattern, payload) is None:
            errors["pattern"] = f"does not match {rules.pattern!r}"
    elif isinstance(value, ArrayValue):
        if rules.min_length is not None and len(payload) < rules.min_length:
            errors["min_length"] = f"fewer than {rules.min_length} items"
        if rules.max_length is not None and len(payload) > rules.max_length:
            errors["max_length"] = f"more than {rules.max_length} items"
    elif isinstance(value, NumberValue):
        if rules.minimum is not None and payload < rules.minimum:
            errors["minimum"] = f"below minimum {rules.minimum}"
        if rules.maximum is not None and payload > rules.maximum:
            errors["maximum"] = f"above maximum {rules.maximum}"

    if rules.allowed_values is not None:
        allowed = [str(v) for v in rules.allowed_values]
        candidates = payload if isinstance(value, ArrayValue) else [payload]
        for candidate in candidates:
            if isinstance(value, NumberValue):
                ok = any(_same_number(candidate, v) for v in rules.allowed_values)
            else:
                ok = str(candidate) in allowed
            if not ok:
                errors["allowed_values"] = f"{candidate!r} is not one of {allowed}"
                break

    return errors


def _same_number(number: float, allowed: Any) -> bool:
    try:
        return number == _coerce_number(allowed)
    except ValueError:
        return False


def coerce_value(
    value_type: ValueType | str,
    raw: Any,
    *,
    value_format: TextFormat | str | None = None,
    rules: ValueRules | dict[str, Any] | None = None,
) -> AttributeValue:
    """Validate raw input against a type tag and build the value model.

    Args:
        value_type: The declared type tag.
        raw: Caller input (string, number, bool, date, dict, list, ...).
        value_format: Optional text subtype (url, email, phone, color).
        rules: Optional validation rules.

    Returns:
        The typed value model.

    Raises:
        ValidationError: With one entry per failing field.
    """
    try:
        value_type = ValueType(value_type)
    except ValueError:
        raise ValidationError({"type": f"unknown value type: {value_type!r}"}) from None

    fmt: TextFormat | None = None
    if value_format is not None:
        try:
            fmt = TextFormat(value_format)
        except ValueError:
            raise ValidationError({"value_format": f"unknown format: {value_format!r}"}) from None
        if fmt is not TextFormat.PLAIN and value_type is not ValueType.TEXT:
            raise ValidationError({"value_format": "formats apply to text values only"})

    parsed_rules = parse_rules(rules)

    if raw is None:
        raise ValidationError({"value": "value is required"})

    coerce, model = _COERCERS[value_type]
    try:
        value: AttributeValue = model(value=coerce(raw))
    except ValueError as exc:
        raise ValidationError({"value": str(exc)}) from None

    errors: dict[str, str] = {}
    if fmt is not None and fmt in FORMAT_PATTERNS:
        if FORMAT_PATTERNS[fmt].match(value.value) is None:  # type: ignore[arg-type]
            errors["value_format"] = f"not a valid {fmt.value}"
    if parsed_rules is not None:
        errors.update(_check_rules(value, parsed_rules))
    if errors:
        raise ValidationError(errors)

    return value


def plain_value(value: AttributeValue) -> Any:
    """The bare Python value, as used in rule snapshots."""
    return value.value
