"""Graph model for tabular bot flows.

A flow is UTF-8 text: line 1 is a header naming every column, each
following line is one node. Fields use RFC4180 quoting, so messages may
contain commas, doubled quotes and embedded newlines. The leading field of
each data row is the node number.

Columns are always resolved by header name (case and whitespace
insensitive). Generators are free to reorder columns between runs.

Node number ranges:
    < 0            global error handlers (e.g. -500 HandleBotError)
    1 .. 99        startup / platform setup
    100 .. 99989   feature flows (666 end-chat, 999 agent transfer, 1800 live)
    >= 99990       terminal / error nodes
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger("botflow_agent.flow.model")


# ---------------------------------------------------------------------------
# Column names
# ---------------------------------------------------------------------------

NODE_NUMBER = "Node Number"
NODE_TYPE = "Node Type"
NODE_NAME = "Node Name"
INTENT = "Intent"
NLU_DISABLED = "NLU Disabled?"
NEXT_NODES = "Next Nodes"
MESSAGE = "Message"
RICH_ASSET_TYPE = "Rich Asset Type"
RICH_ASSET_CONTENT = "Rich Asset Content"
ANSWER_REQUIRED = "Answer Required?"
COMMAND = "Command"
PARAMETER_INPUT = "Parameter Input"
DECISION_VARIABLE = "Decision Variable"
WHAT_NEXT = "What Next?"
VARIABLE = "Variable"

DEFAULT_COLUMNS: list[str] = [
    NODE_NUMBER,
    NODE_TYPE,
    NODE_NAME,
    INTENT,
    "Entity Type",
    "Entity",
    NLU_DISABLED,
    NEXT_NODES,
    MESSAGE,
    RICH_ASSET_TYPE,
    RICH_ASSET_CONTENT,
    ANSWER_REQUIRED,
    "Behaviors",
    COMMAND,
    "Description",
    "Output",
    "Node Input",
    PARAMETER_INPUT,
    DECISION_VARIABLE,
    WHAT_NEXT,
    "Node Tags",
    "Skill Tag",
    VARIABLE,
    "Platform Flag",
    "Flows",
    "CSS Classname",
]

# Nodes every deployable flow is expected to carry.
REQUIRED_SYSTEM_NODES: tuple[int, ...] = (-500, 666, 999, 1800, 99990)

TERMINAL_RANGE_START = 99990


class NodeType(str, Enum):
    DECISION = "D"
    ACTION = "A"

    @classmethod
    def parse(cls, value: str | None) -> NodeType | None:
        """Map 'D'/'A' (or 'Decision'/'Action') to a NodeType; None when unrecognised."""
        if not value:
            return None
        v = value.strip().upper()
        if v in ("D", "DECISION"):
            return cls.DECISION
        if v in ("A", "ACTION"):
            return cls.ACTION
        return None


def node_range(num: int) -> str:
    """Classify a node number into its reserved range."""
    if num < 0:
        return "global_handler"
    if num < 100:
        return "startup"
    if num < TERMINAL_RANGE_START:
        return "feature"
    return "terminal"


def _norm(name: str) -> str:
    return " ".join(name.split()).lower()


def resolve_column(header: list[str], name: str) -> str | None:
    """Return the header entry matching ``name`` (case/whitespace-insensitive)."""
    wanted = _norm(name)
    for col in header:
        if _norm(col) == wanted:
            return col
    return None


# ---------------------------------------------------------------------------
# Node + graph
# ---------------------------------------------------------------------------


@dataclass
class GraphNode:
    """One row of a flow. ``fields`` holds the full row keyed by header name."""

    num: int
    fields: dict[str, str] = field(default_factory=dict)

    def get(self, column: str, default: str = "") -> str:
        if column in self.fields:
            return self.fields[column]
        wanted = _norm(column)
        for key, value in self.fields.items():
            if _norm(key) == wanted:
                return value
        return default

    @property
    def node_type(self) -> NodeType | None:
        return NodeType.parse(self.get(NODE_TYPE))

    @property
    def name(self) -> str:
        return self.get(NODE_NAME)

    @property
    def is_action(self) -> bool:
        return self.node_type is NodeType.ACTION


@dataclass
class FlowGraph:
    header: list[str]
    nodes: dict[int, GraphNode] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, num: object) -> bool:
        return num in self.nodes

    def __iter__(self):
        return iter(self.nodes.values())

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    def get(self, num: int) -> GraphNode | None:
        return self.nodes.get(num)

    def column(self, name: str) -> str | None:
        return resolve_column(self.header, name)

    def rows(self) -> dict[int, dict[str, str]]:
        """Copy of the graph as an ordered num → field-map."""
        return {num: dict(node.fields) for num, node in self.nodes.items()}

    @classmethod
    def from_rows(cls, header: list[str], rows: dict[int, dict[str, str]]) -> FlowGraph:
        return cls(
            header=list(header),
            nodes={num: GraphNode(num=num, fields=dict(f)) for num, f in rows.items()},
        )

    def serialize(self) -> str:
        return serialize_flow(self)


# ---------------------------------------------------------------------------
# Parsing / serialization
# ---------------------------------------------------------------------------


def parse_line(line: str) -> list[str]:
    """Parse a single CSV record (quoted separators and doubled quotes honoured)."""
    for record in csv.reader(io.StringIO(line)):
        return record
    return []


def _parse_num(raw: str) -> int | None:
    try:
        return int(raw.strip())
    except ValueError:
        return None


def parse_flow(text: str) -> FlowGraph:
    """Parse flow text into a FlowGraph.

    Rows whose node-number field is not an integer are skipped. A repeated
    node number keeps the last row.
    """
    records = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    header: list[str] = []
    for record in records:
        if any(cell.strip() for cell in record):
            header = record
            break
    if not header:
        return FlowGraph(header=[])

    num_col = resolve_column(header, NODE_NUMBER) or header[0]
    num_idx = header.index(num_col)

    nodes: dict[int, GraphNode] = {}
    for record in records:
        if not any(cell.strip() for cell in record):
            continue
        raw_num = record[num_idx] if num_idx < len(record) else ""
        num = _parse_num(raw_num)
        if num is None:
            logger.debug("Skipping row with non-integer node number: %r", raw_num[:40])
            continue
        values = record + [""] * (len(header) - len(record))
        if num in nodes:
            logger.warning("Duplicate node number %d; keeping the later row", num)
        nodes[num] = GraphNode(num=num, fields=dict(zip(header, values)))
    return FlowGraph(header=header, nodes=nodes)


def parse_rows(text: str) -> dict[int, dict[str, str]]:
    """Ordered node num → field map for flow text."""
    return parse_flow(text).rows()


def serialize_flow(graph: FlowGraph) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(graph.header)
    for node in graph.nodes.values():
        writer.writerow([node.fields.get(col, "") for col in graph.header])
    return buf.getvalue()
