"""Enumerations for the Label Engine data model."""

from enum import Enum


class ValueType(str, Enum):
    """Type tag of an attribute value. Exactly one payload shape per tag."""

    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    STRUCTURED = "structured"  # JSON object or array
    ARRAY = "array"  # List of strings


class TextFormat(str, Enum):
    """Specialised text subtypes with their own validation pattern."""

    PLAIN = "plain"
    URL = "url"
    EMAIL = "email"
    PHONE = "phone"
    COLOR = "color"  # Hex display colour, e.g. #FF0000


class LabelKind(str, Enum):
    """What kind of label an assignment binds."""

    TAG = "tag"
    CATEGORY = "category"
    METADATA = "metadata"  # Label is an attribute key


class AssignmentSource(str, Enum):
    """Provenance of an assignment."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"
    RULE = "rule"
    SUGGESTION = "suggestion"  # Promoted from an accepted suggestion
    IMPORTED = "imported"


class ChangeType(str, Enum):
    """What happened to an assignment, derived from the field diff."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    ACTIVATED = "activated"
    DEACTIVATED = "deactivated"


class RuleAction(str, Enum):
    """What a rule does when its condition matches."""

    ASSIGN = "assign"
    REMOVE = "remove"
    REQUIRE = "require"  # Reports missing target labels, writes nothing
    MODIFY_VALUE = "modify_value"


class ExecutionMode(str, Enum):
    """When a rule runs and whether its output is binding.

    AUTOMATIC rules run on every apply().
    MANUAL rules only run when invoked explicitly by id.
    SUGGESTION_ONLY rules run on apply() but queue suggestions instead of
    writing assignments.
    """

    AUTOMATIC = "automatic"
    MANUAL = "manual"
    SUGGESTION_ONLY = "suggestion_only"


class SuggestionStatus(str, Enum):
    """Lifecycle status of a Suggestion.

    Suggestions start PENDING, then exactly one of:
    - ACCEPTED → promoted to an Assignment (source=suggestion)
    - REJECTED → terminal, feedback recorded
    - EXPIRED → terminal, set only by the expiry sweep
    """

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class Decision(str, Enum):
    """Human decision on a pending suggestion."""

    ACCEPT = "accept"
    REJECT = "reject"
