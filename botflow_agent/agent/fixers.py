"""Mechanical fixes applied before asking the generator.

Two kinds:

* proven fixes: a learned FixAttempt whose ``fix_diff`` names a field and
  the exact before/after values; applied only when the offending node still
  holds the ``before`` value.
* built-in fixers: deterministic repairs for error categories whose cure
  never needs judgement (variable case, a stray NLU flag, pipes inside
  button labels, unbalanced braces in parameter JSON, answer-required).

Every fixer mutates the FlowGraph in place and returns a short description
of what it did, or None when it did not apply.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Callable

from botflow_agent.flow.model import (
    ANSWER_REQUIRED,
    NLU_DISABLED,
    PARAMETER_INPUT,
    RICH_ASSET_CONTENT,
    VARIABLE,
    FlowGraph,
    GraphNode,
    resolve_column,
)
from botflow_agent.learning.models import FixAttempt
from botflow_agent.learning.signatures import ValidationError, categorize_error

logger = logging.getLogger("botflow_agent.agent.fixers")

_ASKS_FOR_ONE = re.compile(r"(?<![\d.])1(?![\d.])")


def _set(graph: FlowGraph, node: GraphNode, column: str, value: str) -> str | None:
    """Write ``value`` into ``column``; returns the resolved header name or None."""
    col = resolve_column(graph.header, column)
    if col is None:
        return None
    node.fields[col] = value
    return col


# ---------------------------------------------------------------------------
# Proven fixes
# ---------------------------------------------------------------------------


def apply_proven_fix(graph: FlowGraph, error: ValidationError, fix: FixAttempt) -> str | None:
    diff = fix.fix_diff or {}
    field_name = diff.get("field") or error.field_name
    before = diff.get("before")
    after = diff.get("after")
    if error.node_num is None or not field_name or before is None or after is None:
        return None
    node = graph.get(error.node_num)
    if node is None:
        return None
    col = resolve_column(graph.header, field_name)
    if col is None or node.fields.get(col, "") != before:
        return None
    node.fields[col] = str(after)
    logger.info("Applied proven fix %s to node %d (%s)", fix.id, node.num, col)
    return fix.fix_description


# ---------------------------------------------------------------------------
# Built-in fixers
# ---------------------------------------------------------------------------


def _fix_variable_case(graph: FlowGraph, error: ValidationError) -> str | None:
    node = graph.get(error.node_num) if error.node_num is not None else None
    if node is None:
        return None
    current = node.get(VARIABLE).strip()
    fixed = re.sub(r"[\s-]+", "_", current).upper()
    if not current or fixed == current:
        return None
    if _set(graph, node, VARIABLE, fixed) is None:
        return None
    return f"Uppercased Variable {current!r} to {fixed!r}"


def _fix_nlu_single_child(graph: FlowGraph, error: ValidationError) -> str | None:
    node = graph.get(error.node_num) if error.node_num is not None else None
    if node is None or node.get(NLU_DISABLED).strip() != "1":
        return None
    if _set(graph, node, NLU_DISABLED, "") is None:
        return None
    return "Cleared NLU Disabled? on a node with several children"


def _fix_answer_required(graph: FlowGraph, error: ValidationError) -> str | None:
    # Only errors that ask for the value 1.
    if not _ASKS_FOR_ONE.search(error.description):
        return None
    node = graph.get(error.node_num) if error.node_num is not None else None
    if node is None or node.get(ANSWER_REQUIRED).strip() == "1":
        return None
    if _set(graph, node, ANSWER_REQUIRED, "1") is None:
        return None
    return "Set Answer Required? to 1"


def _merge_label_pipes(content: str) -> str:
    """Rejoin button pieces split by a '|' inside a label.

    Buttons are ``label~node`` joined by '|'; a piece without '~' is the
    front of the next button's label.
    """
    pieces = content.split("|")
    out: list[str] = []
    carry = ""
    for i, piece in enumerate(pieces):
        if "~" not in piece and i < len(pieces) - 1:
            carry += piece
            continue
        out.append(carry + piece)
        carry = ""
    return "|".join(out)


def _fix_reserved_pipes(graph: FlowGraph, error: ValidationError) -> str | None:
    """Remove '|' inside button labels ("$25|k~200" becomes "$25k~200")."""
    candidates = [graph.get(error.node_num)] if error.node_num is not None else list(graph)
    changed = 0
    for node in candidates:
        if node is None:
            continue
        content = node.get(RICH_ASSET_CONTENT)
        if "~" not in content or content.lstrip().startswith(("{", "[")):
            continue
        if error.field_entry and error.field_entry not in content:
            continue
        fixed = _merge_label_pipes(content)
        if fixed != content:
            if _set(graph, node, RICH_ASSET_CONTENT, fixed) is not None:
                changed += 1
    return f"Removed reserved '|' from button labels in {changed} node(s)" if changed else None


def _fix_parameter_json(graph: FlowGraph, error: ValidationError) -> str | None:
    """Drop surplus closing braces; only kept when the result parses as JSON."""
    if error.field_name and "parameter" not in error.field_name.lower():
        return None
    node = graph.get(error.node_num) if error.node_num is not None else None
    if node is None:
        return None
    current = node.get(PARAMETER_INPUT).strip()
    fixed = current
    while fixed.count("}") > fixed.count("{"):
        idx = fixed.rfind("}")
        fixed = fixed[:idx] + fixed[idx + 1:]
    if fixed == current:
        return None
    try:
        json.loads(fixed)
    except ValueError:
        return None
    if _set(graph, node, PARAMETER_INPUT, fixed) is None:
        return None
    return "Removed unbalanced closing braces from Parameter Input"


@dataclass(frozen=True)
class BuiltinFixer:
    category: str
    apply: Callable[[FlowGraph, ValidationError], str | None]


BUILTIN_FIXERS: tuple[BuiltinFixer, ...] = (
    BuiltinFixer("VARIABLE_CASE", _fix_variable_case),
    BuiltinFixer("NLU_DISABLED_MULTI_CHILD", _fix_nlu_single_child),
    BuiltinFixer("ANSWER_REQUIRED_CONSTRAINT", _fix_answer_required),
    BuiltinFixer("RESERVED_CHARACTER", _fix_reserved_pipes),
    BuiltinFixer("RICH_ASSET_ERROR", _fix_reserved_pipes),
    BuiltinFixer("INVALID_JSON", _fix_parameter_json),
)


def apply_builtin_fix(
    graph: FlowGraph,
    error: ValidationError,
    fixers: tuple[BuiltinFixer, ...] = BUILTIN_FIXERS,
) -> str | None:
    category = categorize_error(error)
    for fixer in fixers:
        if fixer.category == category:
            description = fixer.apply(graph, error)
            if description:
                logger.info("Built-in fix for %s at node %s: %s", category, error.node_num, description)
                return description
    return None
