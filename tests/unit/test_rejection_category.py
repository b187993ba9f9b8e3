"""
Tests for the rejection taxonomy.
"""

import pytest

from aves.learning.rejection import (
    RejectionCategory,
    coerce_rejection_category,
    extract_rejection_category,
    format_rejection_notes,
)


class TestExtractRejectionCategory:
    """Tests for extract_rejection_category."""

    def test_tag_wins_over_keywords(self):
        """A leading known tag decides the category even if keywords disagree."""
        notes = "[POOR_LOCALIZATION] wrong species label too"
        assert extract_rejection_category(notes) == RejectionCategory.POOR_LOCALIZATION

    def test_tag_is_case_insensitive(self):
        """Tags are matched regardless of case."""
        assert extract_rejection_category("[duplicate]") == RejectionCategory.DUPLICATE

    def test_unknown_tag_falls_back_to_keywords(self):
        """An unknown tag is ignored and keywords are applied."""
        notes = "[NOT_A_CATEGORY] the image is blurry"
        assert extract_rejection_category(notes) == RejectionCategory.LOW_QUALITY

    @pytest.mark.parametrize(
        "notes,expected",
        [
            ("This is the wrong bird", RejectionCategory.INCORRECT_SPECIES),
            ("Species is a teal, not a mallard", RejectionCategory.INCORRECT_SPECIES),
            ("Labelled the wrong body part", RejectionCategory.INCORRECT_FEATURE),
            ("Box is too wide", RejectionCategory.POOR_LOCALIZATION),
            ("That feature doesn't exist here", RejectionCategory.INCORRECT_FEATURE),
            ("Not found in the photo", RejectionCategory.FALSE_POSITIVE),
            ("It does not exist", RejectionCategory.FALSE_POSITIVE),
            ("Already exists on this image", RejectionCategory.DUPLICATE),
            ("Unclear crop", RejectionCategory.LOW_QUALITY),
        ],
    )
    def test_keyword_rules(self, notes, expected):
        """Keyword rules classify free text in priority order."""
        assert extract_rejection_category(notes) == expected

    def test_earlier_rule_wins(self):
        """'species' is checked before 'box'."""
        notes = "box drawn around the wrong species"
        assert extract_rejection_category(notes) == RejectionCategory.INCORRECT_SPECIES

    def test_empty_notes_are_other(self):
        """Empty or missing notes classify as OTHER."""
        assert extract_rejection_category("") == RejectionCategory.OTHER
        assert extract_rejection_category(None) == RejectionCategory.OTHER

    def test_unmatched_text_is_other(self):
        """Text with no keyword classifies as OTHER."""
        assert extract_rejection_category("meh") == RejectionCategory.OTHER


class TestCoerceRejectionCategory:
    """Tests for coerce_rejection_category."""

    def test_passes_enum_through(self):
        assert coerce_rejection_category(RejectionCategory.DUPLICATE) == RejectionCategory.DUPLICATE

    def test_accepts_category_value(self):
        """A bare category value is not keyword-classified."""
        assert coerce_rejection_category("false_positive") == RejectionCategory.FALSE_POSITIVE

    def test_classifies_free_text(self):
        assert coerce_rejection_category("blurry") == RejectionCategory.LOW_QUALITY


class TestFormatRejectionNotes:
    """Tests for format_rejection_notes."""

    def test_prefixes_category(self):
        message = format_rejection_notes(RejectionCategory.POOR_LOCALIZATION, "box too wide")
        assert message == "[POOR_LOCALIZATION] box too wide"

    def test_category_without_notes(self):
        assert format_rejection_notes("duplicate") == "[DUPLICATE]"

    def test_notes_without_category(self):
        assert format_rejection_notes(None, "just wrong") == "just wrong"
        assert format_rejection_notes(None) == ""

    def test_formatted_notes_classify_back(self):
        """Formatted messages classify to the category they were built from."""
        for category in RejectionCategory:
            message = format_rejection_notes(category, "see image")
            assert extract_rejection_category(message) == category
