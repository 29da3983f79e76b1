"""Pydantic request/response models for the HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from label_engine.models.attribute import Attribute
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


class _Out(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# -----------------------------------------------------------------------------
# Values
# -----------------------------------------------------------------------------


class SetValueRequest(BaseModel):
    type: ValueType
    value: Any
    language: str | None = None
    value_format: TextFormat | None = None
    validation_rules: dict[str, Any] | None = None
    actor: str = "api"


class AttributeOut(BaseModel):
    key: str
    language: str
    type: ValueType
    value: Any
    value_format: TextFormat | None = None
    validation_rules: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime | None = None

    @classmethod
    def from_attribute(cls, attribute: Attribute) -> AttributeOut:
        return cls(
            key=attribute.key,
            language=attribute.language,
            type=attribute.value_type,
            value=attribute.payload.get("value"),
            value_format=attribute.value_format,
            validation_rules=attribute.validation_rules or {},
            updated_at=attribute.updated_at,
        )


# -----------------------------------------------------------------------------
# Assignments
# -----------------------------------------------------------------------------


class AssignRequest(BaseModel):
    label: str = Field(min_length=1)
    kind: LabelKind
    source: AssignmentSource = AssignmentSource.MANUAL
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    is_primary: bool | None = None
    language: str | None = None
    expires_at: datetime | None = None
    context_type: str | None = None
    keyword_density: float | None = Field(default=None, ge=0.0)
    actor: str = "api"
    reason: str | None = None


class UsageRequest(BaseModel):
    clicks: int = Field(default=0, ge=0)
    views: int = Field(default=0, ge=0)
    searches: int = Field(default=0, ge=0)
    conversions: int = Field(default=0, ge=0)


class AssignmentOut(_Out):
    assignment_id: UUID
    tenant_id: str
    entity_id: str
    label: str
    kind: LabelKind
    language: str
    source: AssignmentSource
    confidence: float
    is_primary: bool
    is_visible: bool
    is_active: bool
    display_order: int
    context_type: str | None = None
    keyword_density: float
    usage_count: int
    click_count: int
    view_count: int
    search_count: int
    conversion_count: int
    performance_score: float
    relevance_score: float
    popularity_score: float
    last_interaction_at: datetime | None = None
    created_at: datetime
    expires_at: datetime | None = None


class HistoryOut(_Out):
    history_id: int
    assignment_id: UUID | None = None
    label: str
    kind: LabelKind
    change_type: ChangeType
    changed_fields: list[str]
    old_values: dict[str, Any]
    new_values: dict[str, Any]
    actor: str
    reason: str | None = None
    recorded_at: datetime


# -----------------------------------------------------------------------------
# Rules
# -----------------------------------------------------------------------------


class EntityChangedRequest(BaseModel):
    fields: dict[str, Any] = Field(default_factory=dict)
    language: str | None = None


class FailureOut(_Out):
    item: str
    error: str
    message: str


class ApplyResultOut(_Out):
    assignment_ids: list[UUID]
    created_ids: list[UUID]
    changed_ids: list[UUID]
    matched_rules: list[str]
    suggestion_ids: list[UUID]
    modified_keys: list[str]
    failures: list[FailureOut]


class RuleRequest(BaseModel):
    name: str = Field(min_length=1)
    conditions: Any
    action: RuleAction
    kind: LabelKind
    target_labels: list[str]
    parameters: dict[str, Any] = Field(default_factory=dict)
    description: str | None = None
    is_primary: bool = False
    priority: int = 0
    confidence: float | None = None
    execution_mode: ExecutionMode = ExecutionMode.AUTOMATIC


class RuleOut(_Out):
    rule_id: UUID
    name: str
    description: str | None = None
    conditions: dict[str, Any]
    action: RuleAction
    kind: LabelKind
    target_labels: list[str]
    parameters: dict[str, Any]
    is_primary: bool
    priority: int
    confidence: float
    execution_mode: ExecutionMode
    is_active: bool
    matches_count: int
    last_executed_at: datetime | None = None


# -----------------------------------------------------------------------------
# Vocabulary
# -----------------------------------------------------------------------------


class LabelRequest(BaseModel):
    kind: LabelKind
    name: str = Field(min_length=1)
    description: str | None = None
    color: str | None = None
    aliases: list[str] = Field(default_factory=list)


class LabelOut(_Out):
    label_id: UUID
    kind: LabelKind
    slug: str
    name: str
    description: str | None = None
    color: str | None = None
    aliases: list[str]
    is_active: bool


# -----------------------------------------------------------------------------
# Suggestions
# -----------------------------------------------------------------------------


class GenerateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    source: str | None = None
    max_suggestions: int | None = Field(default=None, ge=0)
    kinds: list[LabelKind] | None = None
    language: str | None = None


class GenerateOut(_Out):
    suggestion_ids: list[UUID]
    failures: list[FailureOut]


class SuggestionOut(_Out):
    suggestion_id: UUID
    label: str
    kind: LabelKind
    source: str
    confidence: float
    relevance: float
    reasoning: str | None = None
    supporting_data: dict[str, Any]
    status: SuggestionStatus
    created_at: datetime
    expires_at: datetime


class ResolveRequest(BaseModel):
    decision: Decision
    feedback_score: int | None = Field(default=None, ge=-1, le=1)
    comment: str | None = None
    reviewer: str | None = None


class ResolutionOut(_Out):
    applied: bool
    suggestion_id: UUID
    status: SuggestionStatus | None = None
    assignment_id: UUID | None = None
    reason: str | None = None


class SweepOut(_Out):
    expired_assignment_ids: list[UUID]
    expired_suggestion_ids: list[UUID]
