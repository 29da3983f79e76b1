"""Per-item failure reporting for batch operations."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class Failure:
    """One item of a batch operation that could not be processed.

    item identifies what failed (an entity, a rule name, a label), error is
    the exception class name and message its text.
    """

    item: str
    error: str
    message: str

    @classmethod
    def from_exception(cls, item: object, exc: BaseException) -> Failure:
        return cls(item=str(item), error=type(exc).__name__, message=str(exc))
