"""
Rejection taxonomy.

Reviewers reject AI annotations with free-text notes. The admin UI prefixes
the note with a bracketed category tag (``[INCORRECT_SPECIES] wrong bird``);
older notes and API clients send plain text, which is classified by keyword.
"""

from __future__ import annotations

import re
from enum import Enum


class RejectionCategory(str, Enum):
    """Why a reviewer rejected an annotation."""

    INCORRECT_SPECIES = "incorrect_species"
    INCORRECT_FEATURE = "incorrect_feature"
    POOR_LOCALIZATION = "poor_localization"
    FALSE_POSITIVE = "false_positive"
    DUPLICATE = "duplicate"
    LOW_QUALITY = "low_quality"
    OTHER = "other"


_TAG_PATTERN = re.compile(r"^\s*\[([A-Za-z_]+)\]")

# Evaluated top to bottom, first match wins.
KEYWORD_RULES: tuple[tuple[tuple[str, ...], RejectionCategory], ...] = (
    (("species", "wrong bird"), RejectionCategory.INCORRECT_SPECIES),
    (("feature", "part", "anatomy"), RejectionCategory.INCORRECT_FEATURE),
    (("position", "box", "localization"), RejectionCategory.POOR_LOCALIZATION),
    (("false", "not found", "doesn't exist", "does not exist"), RejectionCategory.FALSE_POSITIVE),
    (("duplicate", "already exists"), RejectionCategory.DUPLICATE),
    (("quality", "blurry", "unclear"), RejectionCategory.LOW_QUALITY),
)

_CATEGORY_VALUES = {category.value for category in RejectionCategory}


def extract_rejection_category(notes: str | None) -> RejectionCategory:
    """
    Classify rejection notes into a RejectionCategory.

    A leading ``[CATEGORY]`` tag naming a known category wins. Otherwise the
    keyword rules are applied to the lower-cased text. Empty notes are OTHER.
    """
    if not notes:
        return RejectionCategory.OTHER

    match = _TAG_PATTERN.match(notes)
    if match:
        tag = match.group(1).lower()
        if tag in _CATEGORY_VALUES:
            return RejectionCategory(tag)

    lowered = notes.lower()
    for keywords, category in KEYWORD_RULES:
        if any(keyword in lowered for keyword in keywords):
            return category

    return RejectionCategory.OTHER


def coerce_rejection_category(value: str | RejectionCategory | None) -> RejectionCategory:
    """Accept a category value, a tagged note, or free text."""
    if isinstance(value, RejectionCategory):
        return value
    if value and value.lower() in _CATEGORY_VALUES:
        return RejectionCategory(value.lower())
    return extract_rejection_category(value)


def format_rejection_notes(
    category: RejectionCategory | str | None,
    notes: str | None = None,
) -> str:
    """Build the ``[CATEGORY] notes`` message the review UI submits."""
    if category is None:
        return notes or ""
    value = category.value if isinstance(category, RejectionCategory) else str(category)
    prefix = f"[{value.upper()}]"
    return f"{prefix} {notes}" if notes else prefix
