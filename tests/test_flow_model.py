"""Flow model parsing and serialization.

Tests:
- Quoted fields with commas, doubled quotes and newlines survive a round trip
- Rows with a non-integer node number are skipped
- Columns resolve by header name regardless of order, case or spacing
- Duplicate node numbers keep the later row
- node_range classification
"""

from __future__ import annotations

from botflow_agent.flow.model import (
    MESSAGE,
    NODE_NAME,
    NodeType,
    node_range,
    parse_flow,
    parse_line,
    resolve_column,
    serialize_flow,
)


_FLOW = (
    "Node Number,Node Type,Node Name,Message,Next Nodes\n"
    '100,D,Welcome,"Hi, I\'m the ""Booking"" bot",101\n'
    '101,D,Menu,"Line one\nLine two",102|103\n'
    "note,D,Comment row,ignored,\n"
    "102,A,Lookup,,103\n"
)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseFlow:
    def test_quoted_fields_preserved(self):
        """Commas, doubled quotes and embedded newlines are unescaped."""
        graph = parse_flow(_FLOW)
        assert graph.get(100).get(MESSAGE) == 'Hi, I\'m the "Booking" bot'
        assert graph.get(101).get(MESSAGE) == "Line one\nLine two"

    def test_non_integer_rows_skipped(self):
        """The 'note' row never becomes a node."""
        graph = parse_flow(_FLOW)
        assert list(graph.nodes) == [100, 101, 102]

    def test_node_types(self):
        graph = parse_flow(_FLOW)
        assert graph.get(100).node_type is NodeType.DECISION
        assert graph.get(102).is_action

    def test_columns_resolved_by_name(self):
        """Reordered, re-cased headers still resolve."""
        text = "message ,NODE NAME,node number\nHello,Start,1\n"
        graph = parse_flow(text)
        node = graph.get(1)
        assert node is not None
        assert node.get(MESSAGE) == "Hello"
        assert node.get(NODE_NAME) == "Start"
        assert graph.column("Node Number") == "node number"

    def test_duplicate_keeps_last(self):
        text = "Node Number,Message\n5,first\n5,second\n"
        assert parse_flow(text).get(5).get(MESSAGE) == "second"

    def test_empty_text(self):
        graph = parse_flow("")
        assert graph.header == []
        assert graph.node_count == 0

    def test_short_rows_padded(self):
        text = "Node Number,Node Name,Message\n7,Only name\n"
        assert parse_flow(text).get(7).get(MESSAGE) == ""


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


class TestSerialize:
    def test_round_trip(self):
        """parse(serialize(g)) reproduces every row field for field."""
        graph = parse_flow(_FLOW)
        again = parse_flow(serialize_flow(graph))
        assert again.header == graph.header
        assert again.rows() == graph.rows()

    def test_serialize_quotes_when_needed(self):
        graph = parse_flow(_FLOW)
        text = graph.serialize()
        assert '"Hi, I\'m the ""Booking"" bot"' in text


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_parse_line_honours_quotes():
    assert parse_line('1,"a,b","say ""hi"""') == ["1", "a,b", 'say "hi"']


def test_resolve_column_missing():
    assert resolve_column(["Node Number"], "Message") is None


def test_node_ranges():
    assert node_range(-500) == "global_handler"
    assert node_range(10) == "startup"
    assert node_range(666) == "feature"
    assert node_range(99990) == "terminal"
