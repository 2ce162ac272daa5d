"""Prompt sections rendered from learned patterns."""

from __future__ import annotations

from botflow_agent.learning.models import ErrorToAvoid, FixAttempt
from botflow_agent.learning.prompts import (
    format_errors_to_avoid,
    format_known_fixes,
    format_proven_fixes_for_generation,
)


def _fix(description: str, applied: int, success: int, error_type: str = "MESSAGE_LENGTH", field: str | None = None):
    return FixAttempt(
        error_pattern_id="p",
        fix_description=description,
        applied_count=applied,
        success_count=success,
        error_type=error_type,
        field_name=field,
    )


class TestErrorsToAvoid:
    def test_empty(self):
        assert format_errors_to_avoid([]) == ""

    def test_grouped_with_priority_and_fix(self):
        text = format_errors_to_avoid([
            ErrorToAvoid("MESSAGE_LENGTH", "Message too long", field="Message", occurrences=7,
                         known_fix="Keep under 200 characters"),
            ErrorToAvoid("VARIABLE_CASE", "Lowercase variable", field="Variable", occurrences=1),
        ])
        assert "## LEARNED ERROR PATTERNS TO AVOID" in text
        assert "### MESSAGE_LENGTH Errors (1 patterns)" in text
        assert "1. Message too long (Field: Message) [7x occurrences - HIGH PRIORITY]" in text
        assert "CORRECT: Keep under 200 characters" in text
        assert "1. Lowercase variable (Field: Variable)" in text
        assert "1x occurrences" not in text

    def test_five_per_type(self):
        errors = [ErrorToAvoid("MESSAGE_LENGTH", f"variant {i}") for i in range(8)]
        text = format_errors_to_avoid(errors)
        assert "(8 patterns)" in text
        assert "variant 4" in text
        assert "variant 5" not in text


class TestKnownFixes:
    def test_best_per_type(self):
        text = format_known_fixes([
            _fix("Split the message", 4, 2),
            _fix("Shorten the message", 4, 4),
        ])
        assert "PROVEN FIXES (apply these first)" in text
        assert "- For MESSAGE_LENGTH errors: Shorten the message (100% success rate)" in text
        assert "Split the message" not in text

    def test_empty(self):
        assert format_known_fixes([]) == ""


class TestProvenForGeneration:
    def test_confidence_floor(self):
        assert format_proven_fixes_for_generation([_fix("Weak", 10, 5)]) == ""

    def test_entry_uses_field_label(self):
        text = format_proven_fixes_for_generation([_fix("Uppercase variables", 5, 5, "VARIABLE_CASE", "Variable")])
        assert "## PROVEN PATTERNS" in text
        assert "- Variable: Uppercase variables [100% success, 5x verified]" in text
