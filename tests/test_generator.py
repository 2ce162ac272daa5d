"""LLMFlowGenerator reply parsing with a scripted ReasoningEngine."""

from __future__ import annotations

import pytest

from botflow_agent.agent.errors import GenerationError
from botflow_agent.agent.generator import LLMFlowGenerator, extract_csv, extract_scripts
from botflow_agent.agent.ports import GenerationRequest
from botflow_agent.reasoning import EngineResponse, ReasoningEngine


_CSV = "Node Number,Node Type,Node Name,Command\n1,D,Start,\n2,A,Lookup,CustomerLookup\n"

_REPLY = (
    "Here is the flow.\n\n"
    "```csv\n" + _CSV + "```\n\n"
    "```python:CustomerLookup\n"
    "class CustomerLookup:\n"
    "    def execute(self, log, payload=None, context=None):\n"
    "        return {'success': 'true'}\n"
    "```\n"
)


class ScriptedEngine(ReasoningEngine):
    def __init__(self, *responses: EngineResponse) -> None:
        self.responses = list(responses)
        self.calls = []

    async def complete(self, messages, system=None, temperature=0.2, max_tokens=16000):
        self.calls.append({"messages": messages, "system": system, "temperature": temperature})
        return self.responses.pop(0)

    @property
    def model_id(self) -> str:
        return "scripted/test"


def _request(guidance: str = "") -> GenerationRequest:
    return GenerationRequest(description="Dental booking bot", bot_id="Acme.Bot", guidance=guidance)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


class TestExtract:
    def test_csv_block(self):
        assert extract_csv(_REPLY) == _CSV

    def test_bare_csv(self):
        assert extract_csv("Node Number,Node Name\n1,Start") == "Node Number,Node Name\n1,Start\n"

    def test_block_without_header_ignored(self):
        assert extract_csv("```csv\na,b\n1,2\n```") is None

    def test_scripts(self):
        scripts = extract_scripts(_REPLY)
        assert list(scripts) == ["CustomerLookup"]
        assert scripts["CustomerLookup"].startswith("class CustomerLookup:")


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class TestGenerate:
    @pytest.mark.asyncio
    async def test_generate(self):
        engine = ScriptedEngine(EngineResponse(content=_REPLY, input_tokens=100, output_tokens=900))
        result = await LLMFlowGenerator(engine).generate(_request("## PROVEN PATTERNS\n- keep it short"))
        assert result.node_count == 2
        assert result.graph_text == _CSV
        assert "CustomerLookup" in result.custom_scripts
        assert result.output_tokens == 900
        prompt = engine.calls[0]["messages"][0].content
        assert "Acme.Bot" in prompt
        assert "## PROVEN PATTERNS" in prompt
        assert "-500" in engine.calls[0]["system"]

    @pytest.mark.asyncio
    async def test_truncated_reply(self):
        engine = ScriptedEngine(EngineResponse(content=_REPLY, stop_reason="max_tokens"))
        with pytest.raises(GenerationError, match="truncated"):
            await LLMFlowGenerator(engine).generate(_request())

    @pytest.mark.asyncio
    async def test_no_csv(self):
        engine = ScriptedEngine(EngineResponse(content="I cannot help with that."))
        with pytest.raises(GenerationError):
            await LLMFlowGenerator(engine).generate(_request())

    @pytest.mark.asyncio
    async def test_refine_sends_instruction_and_flow(self):
        revised = _CSV.replace("Start", "Begin")
        engine = ScriptedEngine(EngineResponse(content=f"```csv\n{revised}```"))
        out = await LLMFlowGenerator(engine).refine(_CSV, "Validation errors to fix:\n1. Node 1 bad name\n")
        assert out == revised
        prompt = engine.calls[0]["messages"][0].content
        assert "1. Node 1 bad name" in prompt
        assert "1,D,Start," in prompt
        assert engine.calls[0]["temperature"] == 0.1
