"""Utility modules for Label Engine."""

from label_engine.utils.clock import as_utc, is_expired, utcnow
from label_engine.utils.text import contains_text, normalize_label

__all__ = [
    "as_utc",
    "contains_text",
    "is_expired",
    "normalize_label",
    "utcnow",
]
