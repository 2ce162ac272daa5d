"""Error signatures, categorization and validator payload decoding.

Tests:
- Signatures are invariant to node/row numbers, quoted integers and character counts
- Signatures are deterministic and field-sensitive
- CATEGORY_LADDER order decides overlapping rules
- Every accepted validator payload shape flattens to ValidationErrors
"""

from __future__ import annotations

import re

from botflow_agent.learning.signatures import (
    UNKNOWN_ERROR,
    CategoryRule,
    ValidationError,
    categorize_error,
    extract_node_context,
    normalize_description,
    normalize_error,
    signature_for,
)


def _err(description: str, field_name: str | None = "Message", node_num: int | None = None) -> ValidationError:
    return ValidationError(description=description, field_name=field_name, node_num=node_num)


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


class TestNormalizeError:
    def test_format(self):
        assert re.fullmatch(r"err_[0-9a-f]+", normalize_error(_err("Message too long")))

    def test_deterministic(self):
        e = _err("Message in node 12 exceeds 200 characters")
        assert normalize_error(e) == normalize_error(e)
        assert normalize_error(e) == signature_for("Message", "Message in node 12 exceeds 200 characters")

    def test_node_numbers_elided(self):
        a = _err("Message in node 12 is 260 characters, limit is 200 characters", node_num=12)
        b = _err("Message in node 4410 is 301 characters, limit is 200 characters", node_num=4410)
        assert normalize_error(a) == normalize_error(b)

    def test_row_and_quoted_numbers_elided(self):
        a = _err('Next node "105" referenced on row 3 does not exist', field_name="Next Nodes")
        b = _err('Next node "9001" referenced on row 87 does not exist', field_name="Next Nodes")
        assert normalize_error(a) == normalize_error(b)

    def test_field_case_insensitive(self):
        assert signature_for("MESSAGE", "too long") == signature_for("message", "too long")

    def test_field_distinguishes(self):
        assert signature_for("Message", "too long") != signature_for("Node Name", "too long")

    def test_missing_field_is_unknown(self):
        assert signature_for(None, "x") == signature_for("unknown", "x")

    def test_normalize_description(self):
        text = 'Node 12, row 3: value "7" has 250 characters'
        assert normalize_description(text) == 'node x, row x: value "x" has n characters'


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


class TestCategorize:
    def test_nlu_multi_child(self):
        e = _err("NLU Disabled node must have only one child", field_name="NLU Disabled?")
        assert categorize_error(e) == "NLU_DISABLED_MULTI_CHILD"

    def test_invalid_json(self):
        e = _err("Invalid JSON: Expecting property name", field_name="Parameter Input")
        assert categorize_error(e) == "INVALID_JSON"

    def test_missing_reference_wins_over_next_nodes(self):
        """Earlier rules take precedence when several match."""
        e = _err("Child node 105 does not exist", field_name="Next Nodes")
        assert categorize_error(e) == "MISSING_REFERENCE"

    def test_next_nodes_constraint(self):
        e = _err("Decision node needs at least one child", field_name="Next Nodes")
        assert categorize_error(e) == "NEXT_NODES_CONSTRAINT"

    def test_message_length(self):
        e = _err("Message exceeds the 200 character limit")
        assert categorize_error(e) == "MESSAGE_LENGTH"

    def test_variable_case(self):
        e = _err("Variable names must use all capital letters", field_name="Variable")
        assert categorize_error(e) == "VARIABLE_CASE"

    def test_reserved_character(self):
        e = _err("Button label contains a reserved pipe character", field_name="Rich Asset Content")
        # "rich asset" field rule sits above the reserved-character rule
        assert categorize_error(e) == "RICH_ASSET_ERROR"
        e = _err("Label contains a reserved character", field_name="Behaviors")
        assert categorize_error(e) == "RESERVED_CHARACTER"

    def test_field_fallback(self):
        assert categorize_error(_err("odd value", field_name="Skill Tag")) == "SKILL_TAG_ERROR"

    def test_unknown(self):
        assert categorize_error(_err("odd value", field_name=None)) == UNKNOWN_ERROR

    def test_custom_ladder(self):
        ladder = (CategoryRule("TIMEOUT", description_any=("timed out",)),)
        assert categorize_error(_err("Request timed out", field_name=None), ladder) == "TIMEOUT"

    def test_empty_rule_never_matches(self):
        assert not CategoryRule("EMPTY").matches("message", "anything")


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class TestFromPayload:
    def test_err_msgs_shape(self):
        raw = {
            "node_num": 12,
            "row_num": 14,
            "err_msgs": [
                {"field_name": "Message", "error_description": "Too long", "field_entry": "x" * 10},
                {"field_name": "Intent", "error_description": "Unknown intent"},
            ],
        }
        errors = ValidationError.from_payload(raw)
        assert len(errors) == 2
        assert errors[0] == ValidationError("Too long", "Message", 12, 14, "x" * 10)
        assert errors[1].field_name == "Intent"
        assert errors[1].row_num == 14

    def test_flat_dict(self):
        errors = ValidationError.from_payload({"node_num": "7", "field_name": "Command", "error_description": "bad"})
        assert errors == [ValidationError("bad", "Command", 7)]

    def test_tuple_shape(self):
        errors = ValidationError.from_payload([300, [["Error", "Message", "Too long"], "loose text"]])
        assert errors[0] == ValidationError("Too long", "Message", 300)
        assert errors[1] == ValidationError("loose text", None, 300)

    def test_free_text_extracts_node(self):
        errors = ValidationError.from_payload("Error in node 44: missing command")
        assert errors[0].node_num == 44
        assert errors[0].field_name is None

    def test_none(self):
        assert ValidationError.from_payload(None) == []

    def test_from_payloads_requires_list(self):
        assert ValidationError.from_payloads({"node_num": 1}) == []
        assert len(ValidationError.from_payloads(["a", "b"])) == 2

    def test_display_truncates_entry(self):
        e = ValidationError("Too long", "Message", 1, None, "y" * 150)
        assert e.display() == f'[Message] Too long (value: "{"y" * 100}...")'


def test_extract_node_context_non_empty_fields():
    text = "Node Number,Node Name,Message,Intent\n12,Greeting,Hello,\n"
    assert extract_node_context(text, 12) == {"Node Number": "12", "Node Name": "Greeting", "Message": "Hello"}
    assert extract_node_context(text, 99) is None
    assert extract_node_context(text, None) is None
