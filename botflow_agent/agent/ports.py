"""Collaborator interfaces and the envelopes they return.

The pipeline only talks to these ABCs. Shipped implementations live in
``botflow_agent.client`` (HTTP) and ``botflow_agent.agent.generator``
(LLM); tests substitute in-memory fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from botflow_agent.learning.signatures import ValidationError


# ---------------------------------------------------------------------------
# Result envelopes
# ---------------------------------------------------------------------------


@dataclass
class GenerationRequest:
    """What the generator is asked to build."""

    description: str
    bot_id: str
    client_name: str = ""
    project_name: str = ""
    guidance: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationResult:
    graph_text: str
    node_count: int
    custom_scripts: dict[str, str] = field(default_factory=dict)
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ValidationOutcome:
    """Validator verdict.

    ``transport_error`` is set when no verdict was obtained (unreachable,
    timeout, server error). ``errors`` is then empty and meaningless.
    """

    valid: bool
    errors: list[ValidationError] = field(default_factory=list)
    version_id: str | None = None
    auth_error: bool = False
    transport_error: str | None = None


@dataclass
class DeployOutcome:
    success: bool
    version_id: str | None = None
    errors: list[ValidationError] = field(default_factory=list)
    auth_error: bool = False
    message: str = ""
    preview_url: str | None = None


@dataclass
class WidgetOutcome:
    success: bool
    widget_id: str | None = None
    widget_url: str | None = None
    error: str | None = None


@dataclass
class RuntimeSession:
    chat_id: str
    user_id: str
    access_token: str
    pype_id: str | None = None
    stream_id: str | None = None


@dataclass
class RuntimeMessage:
    text: str
    from_bot: bool


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class FlowGenerator(ABC):
    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Author a complete graph. Raises GenerationError when none is usable."""

    @abstractmethod
    async def refine(self, graph_text: str, instruction: str, request: GenerationRequest | None = None) -> str:
        """Return a revised graph addressing ``instruction``."""


class FlowValidator(ABC):
    @abstractmethod
    async def validate(self, graph_text: str, bot_id: str) -> ValidationOutcome:
        ...


class FlowDeployer(ABC):
    @abstractmethod
    async def deploy(
        self,
        graph_text: str,
        bot_id: str,
        environment: str,
        scripts: dict[str, str],
    ) -> DeployOutcome:
        ...

    @abstractmethod
    async def create_widget(self, bot_id: str, environment: str, widget_name: str | None = None) -> WidgetOutcome:
        ...


class ScriptSource(ABC):
    @abstractmethod
    async def fetch_script(self, name: str) -> str | None:
        """Script content, or None when the store does not have it."""


class SessionRuntime(ABC):
    """Conversation runtime used by the health probe.

    Methods return error dicts rather than raising, the way the HTTP
    clients do; the probe translates them.
    """

    @abstractmethod
    async def create_session(self, widget_id: str) -> RuntimeSession | dict:
        ...

    @abstractmethod
    async def start_conversation(self, session: RuntimeSession, widget_id: str) -> dict:
        ...

    @abstractmethod
    async def snapshot(self, session: RuntimeSession) -> list[RuntimeMessage] | dict:
        ...

    @abstractmethod
    async def end_conversation(self, session: RuntimeSession) -> dict:
        ...


class Exporter(ABC):
    @abstractmethod
    async def export(self, graph_text: str, bot_id: str) -> dict[str, str]:
        """Export the graph; returns named links."""
