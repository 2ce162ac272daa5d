"""Record types shared by the fix-confidence stores and the learning client."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class ErrorPattern:
    """A recurring validator error, keyed by its signature."""

    error_signature: str
    error_type: str
    error_description: str
    field_name: str | None = None
    node_context: dict[str, Any] | None = None
    occurrence_count: int = 1
    id: str | None = None
    first_seen_at: float | None = None
    last_seen_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FixAttempt:
    """A remediation tied to one error pattern, with rolling outcome counters.

    ``fix_diff`` is the structured form of the change when it can be applied
    mechanically: ``{"field": ..., "before": ..., "after": ...}``.
    """

    error_pattern_id: str
    fix_description: str
    fix_diff: dict[str, Any] | None = None
    applied_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    id: str | None = None
    error_signature: str | None = None
    error_type: str | None = None
    field_name: str | None = None
    last_applied_at: float | None = None

    @property
    def confidence(self) -> float:
        if self.applied_count <= 0:
            return 0.0
        return self.success_count / self.applied_count

    def is_proven(self, min_confidence: float = 0.7, min_applied: int = 3) -> bool:
        return self.confidence >= min_confidence and self.applied_count >= min_applied

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["confidence"] = self.confidence
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FixAttempt:
        pattern = data.get("error_patterns") or data.get("error_pattern") or {}
        if isinstance(pattern, list):
            pattern = pattern[0] if pattern else {}
        return cls(
            id=_str_or_none(data.get("id")),
            error_pattern_id=str(data.get("error_pattern_id", "")),
            fix_description=data.get("fix_description", ""),
            fix_diff=data.get("fix_diff") or None,
            applied_count=int(data.get("applied_count") or 0),
            success_count=int(data.get("success_count") or 0),
            failure_count=int(data.get("failure_count") or 0),
            error_signature=data.get("error_signature") or pattern.get("error_signature"),
            error_type=data.get("error_type") or pattern.get("error_type"),
            field_name=data.get("field_name") or pattern.get("field_name"),
            last_applied_at=data.get("last_applied_at"),
        )


@dataclass
class ErrorToAvoid:
    error_type: str
    description: str
    field: str | None = None
    occurrences: int = 1
    known_fix: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorToAvoid:
        return cls(
            error_type=data.get("error_type") or "General",
            description=data.get("description") or data.get("error_description") or "",
            field=data.get("field") or data.get("field_name"),
            occurrences=int(data.get("occurrences") or data.get("occurrence_count") or 1),
            known_fix=data.get("known_fix") or None,
        )


@dataclass
class HumanCorrection:
    """One field correction made by a person reviewing a failed build."""

    node_num: int
    field: str
    current_value: str
    correct_value: str
    explanation: str = ""
    error_description: str | None = None


@dataclass
class HumanFix:
    fixes: list[HumanCorrection] = field(default_factory=list)
    general_guidance: str = ""


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)
