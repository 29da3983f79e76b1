"""Label Engine exception hierarchy.

All engine-specific exceptions inherit from LabelEngineError.
"""

from __future__ import annotations

from uuid import UUID


class LabelEngineError(Exception):
    """Base exception for all Label Engine errors."""


class ValidationError(LabelEngineError):
    """Raised when a value, rule or assignment fails validation.

    Carries every failing field so callers can report them together.
    Nothing is written when this is raised.
    """

    def __init__(self, errors: dict[str, str] | str) -> None:
        if isinstance(errors, str):
            errors = {"__root__": errors}
        self.errors = errors
        detail = "; ".join(f"{field}: {message}" for field, message in errors.items())
        super().__init__(f"Validation failed: {detail}")


class ConflictError(LabelEngineError):
    """Raised when a write lost a race or violates the current state.

    Primary-assignment races are retried with a fresh read before this
    reaches the caller.
    """


class NotFoundError(LabelEngineError):
    """Raised when an entity, label, assignment, rule or suggestion lookup fails."""

    def __init__(self, kind: str, identifier: object) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class RuleEvaluationError(LabelEngineError):
    """Raised when a rule cannot be parsed or evaluated.

    The rule engine catches this per rule, logs it and continues with the
    remaining rules.
    """

    def __init__(self, rule_id: UUID | None, message: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id}: {message}" if rule_id else message)
