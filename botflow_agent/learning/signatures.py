"""Error signatures and categories for validator errors.

normalize_error() turns a validator error into a stable fingerprint: node
and row numbers, quoted integers and character counts are elided before
hashing, so the same underlying mistake produces the same signature across
unrelated generations.

categorize_error() walks CATEGORY_LADDER, an ordered list of keyword rules.
The first matching rule names the category. The ladder is plain data and
can be extended or replaced without touching the matching code.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from botflow_agent.flow.model import FlowGraph, parse_flow

logger = logging.getLogger("botflow_agent.learning.signatures")

HUMAN_IDENTIFIED = "Human-Identified"
HUMAN_GUIDANCE = "Human-Guidance"
UNKNOWN_ERROR = "UNKNOWN_ERROR"


# ---------------------------------------------------------------------------
# ValidationError
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidationError:
    """One error reported by the external validator."""

    description: str
    field_name: str | None = None
    node_num: int | None = None
    row_num: int | None = None
    field_entry: str | None = None

    def display(self) -> str:
        """Per-field error text: ``[field] description (value: "...")``."""
        text = f"[{self.field_name}] {self.description}" if self.field_name else self.description
        if self.field_entry:
            entry = self.field_entry if len(self.field_entry) <= 100 else self.field_entry[:100] + "..."
            text += f' (value: "{entry}")'
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_num": self.node_num,
            "row_num": self.row_num,
            "field_name": self.field_name,
            "error_description": self.description,
            "field_entry": self.field_entry,
        }

    @classmethod
    def from_payload(cls, raw: Any) -> list[ValidationError]:
        """Flatten one validator error entry into ValidationErrors.

        Accepted shapes:
            {"node_num", "row_num", "err_msgs": [{"field_name", "error_description", "field_entry"}]}
            {"node_num", "field_name", "error_description"}
            [node_num, [[category, field, message], ...]]
            "free text"
        """
        if raw is None:
            return []
        if isinstance(raw, str):
            return [cls(description=raw, node_num=_node_from_text(raw))]
        if isinstance(raw, dict):
            node_num = _as_int(raw.get("node_num"))
            row_num = _as_int(raw.get("row_num"))
            msgs = raw.get("err_msgs")
            if isinstance(msgs, list) and msgs:
                out = []
                for msg in msgs:
                    if not isinstance(msg, dict):
                        out.append(cls(description=str(msg), node_num=node_num, row_num=row_num))
                        continue
                    out.append(cls(
                        description=str(msg.get("error_description") or msg.get("message") or ""),
                        field_name=msg.get("field_name") or None,
                        node_num=node_num,
                        row_num=row_num,
                        field_entry=_as_text(msg.get("field_entry")),
                    ))
                return out
            description = raw.get("error_description") or raw.get("message") or raw.get("error")
            return [cls(
                description=str(description) if description else json.dumps(raw, default=str),
                field_name=raw.get("field_name") or None,
                node_num=node_num,
                row_num=row_num,
                field_entry=_as_text(raw.get("field_entry")),
            )]
        if isinstance(raw, (list, tuple)) and raw:
            node_num = _as_int(raw[0])
            details = raw[1] if len(raw) > 1 else None
            if isinstance(details, list) and details:
                out = []
                for d in details:
                    if isinstance(d, (list, tuple)) and len(d) >= 3:
                        out.append(cls(description=str(d[2]), field_name=str(d[1]) or None, node_num=node_num))
                    else:
                        out.append(cls(description=str(d), node_num=node_num))
                return out
            return [cls(description=json.dumps(details, default=str), node_num=node_num)]
        return [cls(description=json.dumps(raw, default=str))]

    @classmethod
    def from_payloads(cls, raw_errors: Any) -> list[ValidationError]:
        if not isinstance(raw_errors, list):
            return []
        return [e for raw in raw_errors for e in cls.from_payload(raw)]


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return value if isinstance(value, str) else json.dumps(value, default=str)


_NODE_IN_TEXT = re.compile(r"\bnode\s+(-?\d+)", re.IGNORECASE | re.ASCII)


def _node_from_text(text: str) -> int | None:
    m = _NODE_IN_TEXT.search(text)
    return int(m.group(1)) if m else None


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

_ELISIONS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"node \d+", re.IGNORECASE | re.ASCII), "node X"),
    (re.compile(r'"\d+"', re.ASCII), '"X"'),
    (re.compile(r"row \d+", re.IGNORECASE | re.ASCII), "row X"),
    (re.compile(r"\d+ characters?", re.IGNORECASE | re.ASCII), "N characters"),
]


def normalize_description(description: str) -> str:
    for pattern, replacement in _ELISIONS:
        description = pattern.sub(replacement, description)
    return description.lower().strip()


def _rolling_hash(text: str) -> int:
    """31-multiplier rolling hash over UTF-16 code units, wrapped to signed 32 bits."""
    data = text.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        h = (h * 31 + (data[i] | (data[i + 1] << 8))) & 0xFFFFFFFF
    return h - 0x100000000 if h >= 0x80000000 else h


def signature_for(field_name: str | None, description: str) -> str:
    key = f"{(field_name or 'unknown').lower()}:{normalize_description(description)}"
    return f"err_{abs(_rolling_hash(key)):x}"


def normalize_error(error: ValidationError) -> str:
    """Stable ``err_<hex>`` signature for a validator error."""
    return signature_for(error.field_name, error.description)


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CategoryRule:
    """Keyword rule; every populated condition must hold for a match.

    description_all: all terms appear in the description
    description_any: at least one term appears in the description
    field_all:       all terms appear in the field name
    """

    category: str
    description_all: tuple[str, ...] = ()
    description_any: tuple[str, ...] = ()
    field_all: tuple[str, ...] = ()

    def matches(self, field_name: str, description: str) -> bool:
        if self.description_all and not all(t in description for t in self.description_all):
            return False
        if self.description_any and not any(t in description for t in self.description_any):
            return False
        if self.field_all and not all(t in field_name for t in self.field_all):
            return False
        return bool(self.description_all or self.description_any or self.field_all)


CATEGORY_LADDER: tuple[CategoryRule, ...] = (
    CategoryRule("NLU_DISABLED_MULTI_CHILD", description_all=("nlu disabled", "one child")),
    CategoryRule(
        "INVALID_JSON",
        description_any=("invalid json", "malformed", "json input error", "expecting property name"),
    ),
    CategoryRule("MISSING_REFERENCE", description_any=("does not exist", "not found")),
    CategoryRule("NEXT_NODES_CONSTRAINT", description_all=("child",), field_all=("next nodes",)),
    CategoryRule("RICH_ASSET_ERROR", field_all=("rich asset",)),
    CategoryRule("MESSAGE_LENGTH", description_all=("character",), field_all=("message",)),
    CategoryRule(
        "RESERVED_CHARACTER",
        description_any=("reserved", "special character", "pipe character"),
    ),
    CategoryRule("ANSWER_REQUIRED_CONSTRAINT", description_any=("answer required", "ans_req")),
    CategoryRule("VARIABLE_CASE", description_any=("capital letters", "all capital")),
    CategoryRule("NODE_NUMBER_FORMAT", description_all=("not an integer",), field_all=("node number",)),
)


def categorize_error(error: ValidationError, ladder: tuple[CategoryRule, ...] | list[CategoryRule] = CATEGORY_LADDER) -> str:
    field_name = (error.field_name or "").lower()
    description = (error.description or "").lower()
    for rule in ladder:
        if rule.matches(field_name, description):
            return rule.category
    if field_name:
        return re.sub(r"\s+", "_", field_name.upper()) + "_ERROR"
    return UNKNOWN_ERROR


# ---------------------------------------------------------------------------
# Node context
# ---------------------------------------------------------------------------


def extract_node_context(graph: FlowGraph | str, node_num: int | None) -> dict[str, str] | None:
    """Non-empty fields of the offending node, for pattern logging."""
    if node_num is None:
        return None
    if isinstance(graph, str):
        graph = parse_flow(graph)
    node = graph.get(node_num)
    if node is None:
        return None
    return {k: v for k, v in node.fields.items() if v and v.strip()}
