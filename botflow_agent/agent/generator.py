"""LLM-backed flow generator.

The model is asked for one fenced ```csv block holding the whole flow and,
optionally, one ```python:<ScriptName> block per custom action script the
flow references. Anything else in the reply is ignored.
"""

from __future__ import annotations

import logging
import re

from botflow_agent.agent.errors import GenerationError
from botflow_agent.agent.ports import FlowGenerator, GenerationRequest, GenerationResult
from botflow_agent.flow.model import DEFAULT_COLUMNS, REQUIRED_SYSTEM_NODES, parse_flow
from botflow_agent.reasoning import Message, ReasoningEngine

logger = logging.getLogger("botflow_agent.agent.generator")

_CSV_BLOCK = re.compile(r"```(?:csv)?[ \t]*\n(.*?)```", re.DOTALL | re.IGNORECASE)
_SCRIPT_BLOCK = re.compile(r"```python:([A-Za-z_][A-Za-z0-9_]*)[ \t]*\n(.*?)```", re.DOTALL)

_SYSTEM_PROMPT = """\
You design conversational bot flows as CSV. Each row is one node.

Header (exact names, this order):
{header}

Rules:
- Node Number is a unique integer. Node Type is D (decision: shows a message
  or choices) or A (action: runs the script named in Command).
- Required system nodes: {required}. -500 runs HandleBotError, 666 ends the
  chat, 999 transfers to an agent, 1800 runs GenAIFallback, 99990 is the
  error node.
- Next Nodes and What Next? may only reference node numbers that exist.
- Quote any field containing a comma, quote or newline; double embedded quotes.
- Variables are ALL_CAPS_WITH_UNDERSCORES.

Reply with the full flow in one ```csv block. For every custom action script
you reference that is not a built-in Sys* command, add a ```python:<Name>
block defining class <Name> with execute(self, log, payload=None, context=None).
"""

_REFINE_PROMPT = """\
The validator rejected this flow. Fix ONLY what the errors below describe and
return the complete corrected flow in one ```csv block. Keep every other row
unchanged and keep the same node numbers.

{instruction}

Current flow:
```csv
{graph}```
"""


def extract_csv(text: str) -> str | None:
    """The flow CSV in a model reply, or None."""
    for block in _CSV_BLOCK.findall(text):
        if "node number" in block.lower()[:200]:
            return block if block.endswith("\n") else block + "\n"
    stripped = text.strip()
    if stripped.lower().startswith("node number"):
        return stripped + "\n"
    return None


def extract_scripts(text: str) -> dict[str, str]:
    return {name: body.rstrip() + "\n" for name, body in _SCRIPT_BLOCK.findall(text)}


class LLMFlowGenerator(FlowGenerator):
    def __init__(self, engine: ReasoningEngine, temperature: float = 0.2, max_tokens: int = 16000) -> None:
        self._engine = engine
        self._temperature = temperature
        self._max_tokens = max_tokens

    def _system(self) -> str:
        return _SYSTEM_PROMPT.format(
            header=",".join(DEFAULT_COLUMNS),
            required=", ".join(str(n) for n in REQUIRED_SYSTEM_NODES),
        )

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        prompt = f"Build the flow for bot {request.bot_id}.\n\n{request.description.strip()}\n"
        if request.guidance:
            prompt += f"\n{request.guidance}\n"

        logger.info("Generating flow for %s via %s", request.bot_id, self._engine.model_id)
        response = await self._engine.complete(
            [Message(role="user", content=prompt)],
            system=self._system(),
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        if response.truncated:
            raise GenerationError("Generation was truncated before the flow was complete")
        graph_text = extract_csv(response.content or "")
        if graph_text is None:
            raise GenerationError("Generator reply contained no CSV flow")
        graph = parse_flow(graph_text)
        if graph.node_count == 0:
            raise GenerationError("Generated flow has no parseable nodes")

        scripts = extract_scripts(response.content or "")
        logger.info("Generated %d nodes, %d custom script(s)", graph.node_count, len(scripts))
        return GenerationResult(
            graph_text=graph_text,
            node_count=graph.node_count,
            custom_scripts=scripts,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        )

    async def refine(self, graph_text: str, instruction: str, request: GenerationRequest | None = None) -> str:
        response = await self._engine.complete(
            [Message(role="user", content=_REFINE_PROMPT.format(instruction=instruction, graph=graph_text))],
            system=self._system(),
            temperature=0.1,
            max_tokens=self._max_tokens,
        )
        revised = extract_csv(response.content or "")
        if revised is None or response.truncated:
            raise GenerationError("Refinement reply contained no complete CSV flow")
        return revised
