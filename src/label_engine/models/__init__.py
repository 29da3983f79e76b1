"""Database models for Label Engine."""

from label_engine.models.assignment import Assignment
from label_engine.models.attribute import Attribute
from label_engine.models.base import Base
from label_engine.models.enums import (
    AssignmentSource,
    ChangeType,
    Decision,
    ExecutionMode,
    LabelKind,
    RuleAction,
    SuggestionStatus,
    TextFormat,
    ValueType,
)
from label_engine.models.history import AssignmentHistory
from label_engine.models.label import Label
from label_engine.models.rule import Rule
from label_engine.models.suggestion import Suggestion

__all__ = [
    "Assignment",
    "AssignmentHistory",
    "AssignmentSource",
    "Attribute",
    "Base",
    "ChangeType",
    "Decision",
    "ExecutionMode",
    "Label",
    "LabelKind",
    "Rule",
    "RuleAction",
    "Suggestion",
    "SuggestionStatus",
    "TextFormat",
    "ValueType",
]
