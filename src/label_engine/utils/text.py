"""Label and key normalization."""

from __future__ import annotations

import re
import unicodedata


def normalize_label(name: str) -> str:
    """Normalize a label or attribute key to its canonical slug.

    Normalization rules:
    - Unicode NFKC normalization
    - Lowercase
    - Strip whitespace
    - Replace non-alphanumeric with underscore
    - Collapse multiple underscores
    - Remove leading/trailing underscores

    Examples:
        "Summer Sale" -> "summer_sale"
        "summer_sale" -> "summer_sale"
        "SUMMER-SALE" -> "summer_sale"
        "  Red  " -> "red"
    """
    name = unicodedata.normalize("NFKC", name)
    name = name.lower().strip()
    name = re.sub(r"[^a-z0-9]", "_", name)
    name = re.sub(r"_+", "_", name)
    return name.strip("_")


def contains_text(haystack: str | None, needle: str | None) -> bool:
    """Case-insensitive substring test (ILIKE '%needle%')."""
    if not haystack or not needle:
        return False
    return needle.casefold() in haystack.casefold()
