"""Post-deployment health probe.

Opens an anonymous session against the deployed widget, starts a
conversation, waits for the bot to settle and reads the opening messages.
A bot that greets with a technical-difficulty apology, hands straight off
to an agent, or ends the session immediately is broken even though it
deployed cleanly.

The probe never raises: its own failures are reported as
``healthy=False, reason="unknown"`` and are advisory only.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from botflow_agent.agent.ports import RuntimeMessage, RuntimeSession, SessionRuntime

logger = logging.getLogger("botflow_agent.agent.health")

# Ordered; the first matching category wins.
BROKEN_SIGNATURES: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "technical_difficulty",
        re.compile(
            r"experiencing (some )?technical difficult|technical (issue|problem)s?|"
            r"something went wrong|an error (has )?occurred|unable to process",
            re.IGNORECASE,
        ),
    ),
    (
        "agent_transfer",
        re.compile(
            r"(transferr?ing|connecting) you (to|with) (an? )?(live |human )?(agent|representative)|"
            r"please hold while .*agent",
            re.IGNORECASE,
        ),
    ),
    (
        "session_ended",
        re.compile(r"(this|the|your) (chat|session|conversation) has (ended|been closed)|session (has )?expired", re.IGNORECASE),
    ),
)


@dataclass
class HealthResult:
    healthy: bool
    reason: str | None = None  # broken category | "no_response" | "unknown"
    offending_text: str | None = None
    messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "reason": self.reason,
            "offending_text": self.offending_text,
            "messages": list(self.messages),
        }


def classify_messages(messages: list[RuntimeMessage]) -> HealthResult:
    """Classify a snapshot by scanning bot-authored text against BROKEN_SIGNATURES."""
    bot_texts = [m.text for m in messages if m.from_bot and m.text.strip()]
    for text in bot_texts:
        for category, pattern in BROKEN_SIGNATURES:
            if pattern.search(text):
                return HealthResult(healthy=False, reason=category, offending_text=text, messages=bot_texts)
    if not bot_texts:
        return HealthResult(healthy=False, reason="no_response", messages=[])
    return HealthResult(healthy=True, messages=bot_texts)


class HealthProbe:
    def __init__(
        self,
        runtime: SessionRuntime,
        settle_seconds: float = 3.0,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.runtime = runtime
        self.settle_seconds = settle_seconds
        self.timeout = timeout
        self._sleep = sleep

    async def _probe(self, widget_id: str) -> HealthResult:
        session = await self.runtime.create_session(widget_id)
        if not isinstance(session, RuntimeSession):
            return HealthResult(healthy=False, reason="unknown", offending_text=session.get("error"))
        try:
            started = await self.runtime.start_conversation(session, widget_id)
            if "error" in started:
                return HealthResult(healthy=False, reason="unknown", offending_text=started["error"])
            await self._sleep(self.settle_seconds)
            snapshot = await self.runtime.snapshot(session)
            if isinstance(snapshot, dict):
                return HealthResult(healthy=False, reason="unknown", offending_text=snapshot.get("error"))
            return classify_messages(snapshot)
        finally:
            ended = await self.runtime.end_conversation(session)
            if "error" in ended:
                logger.debug("Ending health-probe conversation failed: %s", ended["error"])

    async def check(self, widget_id: str) -> HealthResult:
        try:
            result = await asyncio.wait_for(self._probe(widget_id), timeout=self.timeout)
        except asyncio.TimeoutError:
            result = HealthResult(healthy=False, reason="unknown", offending_text="health probe timed out")
        except Exception as e:
            logger.warning("Health probe failed: %s", e)
            result = HealthResult(healthy=False, reason="unknown", offending_text=str(e) or type(e).__name__)

        if result.healthy:
            logger.info("Health probe for %s: healthy (%d bot message(s))", widget_id, len(result.messages))
        else:
            logger.warning("Health probe for %s: unhealthy (%s)", widget_id, result.reason)
        return result
