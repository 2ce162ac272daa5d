"""LLM abstraction layer: model-agnostic reasoning engine.

The flow generator talks to ReasoningEngine only. New providers implement
complete() and plug in without touching the pipeline.

Also owns ReasoningSettings so that provider selection and keys come from
the environment (or .env) through pydantic-settings.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("botflow_agent.reasoning")


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """A single conversation turn. role is "user" or "assistant"."""

    role: str
    content: str


@dataclass
class EngineResponse:
    content: str | None
    stop_reason: str = "end_turn"  # "end_turn" | "max_tokens"
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def truncated(self) -> bool:
        return self.stop_reason == "max_tokens"


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class ReasoningEngine(ABC):
    """Abstract base class for any LLM provider."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 16000,
    ) -> EngineResponse:
        """Send a conversation to the LLM and return its text reply.

        Args:
            messages:    Conversation history (user/assistant turns).
            system:      Optional system prompt injected before the conversation.
            temperature: Sampling temperature (0.0–1.0). Lower = more focused.
            max_tokens:  Completion budget; flows with many nodes need a large one.
        """
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Human-readable provider/model string for logging, e.g. 'anthropic/claude-sonnet-4-6'."""
        ...


# ---------------------------------------------------------------------------
# Claude (Anthropic) implementation
# ---------------------------------------------------------------------------


class ClaudeEngine(ReasoningEngine):
    """Reasoning engine backed by Anthropic's Claude API.

    Requires: pip install 'botflow-agent[claude]'
    """

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-6") -> None:
        if not api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY is required for ClaudeEngine. "
                "Set it in your environment or .env file."
            )
        import anthropic

        self._client = anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model
        logger.info("ClaudeEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"anthropic/{self._model}"

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 16000,
    ) -> EngineResponse:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system

        logger.info(
            "ClaudeEngine.complete: %d messages, ~%d prompt chars",
            len(messages), sum(len(m.content) for m in messages) + len(system or ""),
        )
        response = await self._client.messages.create(**kwargs)
        text = "".join(block.text for block in response.content if block.type == "text")
        usage = getattr(response, "usage", None)
        return EngineResponse(
            content=text or None,
            stop_reason=response.stop_reason or "end_turn",
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )


# ---------------------------------------------------------------------------
# OpenAI implementation
# ---------------------------------------------------------------------------


class OpenAIEngine(ReasoningEngine):
    """Reasoning engine backed by the OpenAI API.

    Requires: pip install 'botflow-agent[openai]'
    """

    def __init__(self, api_key: str, model: str = "gpt-4o") -> None:
        if not api_key:
            raise ValueError(
                "OPENAI_API_KEY is required for OpenAIEngine. "
                "Set it in your environment or .env file."
            )
        import openai

        self._client = openai.AsyncOpenAI(api_key=api_key)
        self._model = model
        logger.info("OpenAIEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"openai/{self._model}"

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 16000,
    ) -> EngineResponse:
        oai_messages: list[dict[str, Any]] = []
        if system:
            oai_messages.append({"role": "system", "content": system})
        oai_messages.extend({"role": m.role, "content": m.content} for m in messages)

        logger.debug("OpenAIEngine.complete: %d messages", len(messages))
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=oai_messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return EngineResponse(
            content=choice.message.content,
            stop_reason="max_tokens" if choice.finish_reason == "length" else "end_turn",
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )


# ---------------------------------------------------------------------------
# Reasoning engine settings
# ---------------------------------------------------------------------------


class ReasoningSettings(BaseSettings):
    """Settings for the swappable reasoning engine.

    Environment variables:
      REASONING_ENGINE      - LLM provider: "claude" | "openai" (default: "claude")
      REASONING_MODEL       - Model name override; leave unset for provider default
      ANTHROPIC_API_KEY     - Required when provider is "claude"
      OPENAI_API_KEY        - Required when provider is "openai"
      REASONING_TEMPERATURE - Sampling temperature 0.0–1.0 (default: 0.2)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    provider: str = Field(default="claude", validation_alias="REASONING_ENGINE")
    model: str | None = Field(default=None, validation_alias="REASONING_MODEL")
    anthropic_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="ANTHROPIC_API_KEY",
        repr=False,
    )
    openai_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="OPENAI_API_KEY",
        repr=False,
    )
    temperature: float = Field(default=0.2, validation_alias="REASONING_TEMPERATURE")

    @field_validator("provider", mode="before")
    @classmethod
    def lowercase_provider(cls, v: object) -> str:
        return str(v).lower()

    @field_validator("model", mode="before")
    @classmethod
    def empty_str_to_none(cls, v: object) -> str | None:
        if not v:
            return None
        return str(v)

    @field_validator("temperature")
    @classmethod
    def clamp_temperature(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    @classmethod
    def from_env(cls) -> ReasoningSettings:
        return cls()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_engine(settings: ReasoningSettings) -> ReasoningEngine:
    """Instantiate the configured reasoning engine."""
    match settings.provider:
        case "claude" | "anthropic":
            return ClaudeEngine(
                api_key=settings.anthropic_api_key.get_secret_value(),
                model=settings.model or "claude-sonnet-4-6",
            )
        case "openai" | "gpt":
            return OpenAIEngine(
                api_key=settings.openai_api_key.get_secret_value(),
                model=settings.model or "gpt-4o",
            )
        case _:
            raise ValueError(
                f"Unknown reasoning engine provider: {settings.provider!r}. "
                f"Valid options: 'claude', 'openai'"
            )
