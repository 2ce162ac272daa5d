"""Render learned patterns as prompt sections for the generator."""

from __future__ import annotations

from botflow_agent.learning.models import ErrorToAvoid, FixAttempt

HIGH_PRIORITY_OCCURRENCES = 3
PER_TYPE_LIMIT = 5
PROVEN_PATTERN_LIMIT = 10


def format_errors_to_avoid(errors: list[ErrorToAvoid]) -> str:
    """Group recurring errors by type, five per type, flagging frequent ones."""
    if not errors:
        return ""
    grouped: dict[str, list[ErrorToAvoid]] = {}
    for e in errors:
        grouped.setdefault(e.error_type or "General", []).append(e)

    sections = []
    for error_type, items in grouped.items():
        lines = []
        for i, e in enumerate(items[:PER_TYPE_LIMIT], start=1):
            line = f"   {i}. {e.description}"
            if e.field:
                line += f" (Field: {e.field})"
            if e.occurrences > HIGH_PRIORITY_OCCURRENCES:
                line += f" [{e.occurrences}x occurrences - HIGH PRIORITY]"
            if e.known_fix:
                line += f"\n      CORRECT: {e.known_fix}"
            lines.append(line)
        sections.append(f"### {error_type} Errors ({len(items)} patterns)\n" + "\n".join(lines))

    return (
        "\n## LEARNED ERROR PATTERNS TO AVOID\n"
        "The following mistakes were rejected by the validator in previous builds. Avoid them:\n\n"
        + "\n\n".join(sections)
        + "\n"
    )


def _best_by_type(fixes: list[FixAttempt], default_type: str) -> dict[str, FixAttempt]:
    best: dict[str, FixAttempt] = {}
    for fix in fixes:
        key = fix.error_type or default_type
        if key not in best or fix.confidence > best[key].confidence:
            best[key] = fix
    return best


def format_known_fixes(fixes: list[FixAttempt]) -> str:
    """Best fix per error type, for repair instructions."""
    if not fixes:
        return ""
    lines = [
        f"- For {error_type} errors: {fix.fix_description} ({round(fix.confidence * 100)}% success rate)"
        for error_type, fix in _best_by_type(fixes, "unknown").items()
    ]
    return "\nPROVEN FIXES (apply these first):\n" + "\n".join(lines) + "\n"


def format_proven_fixes_for_generation(fixes: list[FixAttempt], min_confidence: float = 0.7) -> str:
    """Positive examples for the initial generation prompt."""
    entries = []
    for error_type, fix in _best_by_type(fixes, "General").items():
        if fix.confidence < min_confidence:
            continue
        label = fix.field_name or error_type
        entries.append(
            f"   - {label}: {fix.fix_description} "
            f"[{round(fix.confidence * 100)}% success, {fix.applied_count}x verified]"
        )
        if len(entries) >= PROVEN_PATTERN_LIMIT:
            break
    if not entries:
        return ""
    return (
        "\n## PROVEN PATTERNS\n"
        "These patterns have been verified to pass validation across multiple builds:\n\n"
        + "\n".join(entries)
        + "\n"
    )
