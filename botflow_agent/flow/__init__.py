"""Tabular bot-flow graph model and structural diff engine."""

from botflow_agent.flow.diff import (
    FlowDiff,
    NodeChange,
    apply_changes,
    describe_change,
    diff_flows,
    diff_rows,
    match_changes_to_errors,
)
from botflow_agent.flow.model import (
    FlowGraph,
    GraphNode,
    NodeType,
    node_range,
    parse_flow,
    parse_line,
    parse_rows,
    serialize_flow,
)

__all__ = [
    "FlowDiff",
    "FlowGraph",
    "GraphNode",
    "NodeChange",
    "NodeType",
    "apply_changes",
    "describe_change",
    "diff_flows",
    "diff_rows",
    "match_changes_to_errors",
    "node_range",
    "parse_flow",
    "parse_line",
    "parse_rows",
    "serialize_flow",
]
