"""Structural diff between two flow snapshots.

Used by the refine loop to attribute a revision's changes to the validator
errors they were meant to fix. Attribution is diagnostic only; it never
decides control flow.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Literal

from botflow_agent.flow.model import parse_rows

ChangeType = Literal["added", "removed", "modified"]

_TRUNCATE_AT = 50


@dataclass
class NodeChange:
    node_num: int
    change_type: ChangeType
    changed_fields: list[str] = field(default_factory=list)
    before: dict[str, str] | None = None
    after: dict[str, str] | None = None


@dataclass
class FlowDiff:
    changes: list[NodeChange]
    added: list[int]
    removed: list[int]
    modified: list[int]
    summary: str

    @property
    def is_empty(self) -> bool:
        return not self.changes


def _summarize(added: list[int], removed: list[int], modified: list[int]) -> str:
    parts: list[str] = []
    for label, nums in (("Added", added), ("Removed", removed), ("Modified", modified)):
        if nums:
            parts.append(f"{label} {len(nums)} node(s): {', '.join(str(n) for n in nums)}")
    return "; ".join(parts) if parts else "No changes detected"


def diff_rows(
    before: dict[int, dict[str, str]],
    after: dict[int, dict[str, str]],
) -> FlowDiff:
    """Diff two num → field-map snapshots. A missing field compares equal to ''."""
    changes: list[NodeChange] = []
    added: list[int] = []
    removed: list[int] = []
    modified: list[int] = []

    for num, after_fields in after.items():
        before_fields = before.get(num)
        if before_fields is None:
            added.append(num)
            changes.append(NodeChange(num, "added", sorted(after_fields), None, dict(after_fields)))
            continue
        changed = [
            name
            for name in sorted(set(before_fields) | set(after_fields))
            if before_fields.get(name, "") != after_fields.get(name, "")
        ]
        if changed:
            modified.append(num)
            changes.append(NodeChange(num, "modified", changed, dict(before_fields), dict(after_fields)))

    for num, before_fields in before.items():
        if num not in after:
            removed.append(num)
            changes.append(NodeChange(num, "removed", sorted(before_fields), dict(before_fields), None))

    added.sort()
    removed.sort()
    modified.sort()
    changes.sort(key=lambda c: c.node_num)
    return FlowDiff(
        changes=changes,
        added=added,
        removed=removed,
        modified=modified,
        summary=_summarize(added, removed, modified),
    )


def diff_flows(before_text: str, after_text: str) -> FlowDiff:
    return diff_rows(parse_rows(before_text), parse_rows(after_text))


def _truncate(value: str) -> str:
    if not value:
        return "(empty)"
    if len(value) > _TRUNCATE_AT:
        return value[:_TRUNCATE_AT] + "..."
    return value


def describe_change(change: NodeChange) -> str:
    """One-line human description of a change, values truncated to 50 chars."""
    if change.change_type == "added":
        return f"Added node {change.node_num}"
    if change.change_type == "removed":
        return f"Removed node {change.node_num}"
    before = change.before or {}
    after = change.after or {}
    parts = [
        f'{name}: "{_truncate(before.get(name, ""))}" → "{_truncate(after.get(name, ""))}"'
        for name in change.changed_fields
    ]
    return f"Modified node {change.node_num}: " + "; ".join(parts)


def apply_changes(
    before: dict[int, dict[str, str]],
    changes: Iterable[NodeChange],
) -> dict[int, dict[str, str]]:
    """Apply a change list to ``before`` and return the resulting snapshot."""
    result = {num: dict(fields) for num, fields in before.items()}
    for change in changes:
        if change.change_type == "removed":
            result.pop(change.node_num, None)
        elif change.change_type == "added":
            result[change.node_num] = dict(change.after or {})
        else:
            row = result.setdefault(change.node_num, {})
            after = change.after or {}
            for name in change.changed_fields:
                row[name] = after.get(name, "")
    return result


def match_changes_to_errors(changes: list[NodeChange], errors: Iterable[Any]) -> dict[Any, list[NodeChange]]:
    """Associate changes with the errors they plausibly address.

    An error (anything with ``node_num`` and ``field_name`` attributes)
    matches a change when both name the same node, or when the error field
    and a changed field name contain one another, case-insensitively.
    Errors with no matching change are left out.
    """
    matches: dict[Any, list[NodeChange]] = {}
    for error in errors:
        node_num = getattr(error, "node_num", None)
        field_name = (getattr(error, "field_name", None) or "").lower()
        hits = []
        for change in changes:
            if node_num is not None and change.node_num == node_num:
                hits.append(change)
                continue
            if field_name and any(
                field_name in f.lower() or f.lower() in field_name for f in change.changed_fields
            ):
                hits.append(change)
        if hits:
            matches.setdefault(error, []).extend(hits)
    return matches
