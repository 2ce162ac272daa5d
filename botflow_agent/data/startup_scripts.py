"""Bundled runtime scripts required by every generated flow.

These ship with the package so a deploy never depends on the remote script
store for them. Scripts marked critical must resolve before deploy: a flow
missing HandleBotError, for example, transfers every user to an agent on
the first unhandled exception.

The contents are action-node scripts executed by the bot runtime. Each
defines a class named after the script with an ``execute`` method.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger("botflow_agent.data.startup_scripts")

MIN_SCRIPT_LENGTH = 100


@dataclass(frozen=True)
class StartupScript:
    name: str
    description: str
    content: str
    critical: bool = False
    used_by_nodes: tuple[int, ...] = field(default_factory=tuple)


_HANDLE_BOT_ERROR = '''\
# -*- coding: utf-8 -*-
"""Global error handler (node -500).

Decision Variable: error_type
What Next?: bot_error~99990|bot_timeout~99990|other~99990
"""


class HandleBotError:
    def execute(self, log, payload=None, context=None):
        save_to = (payload or {}).get("save_error_to", "PLATFORM_ERROR")
        try:
            error = {}
            if isinstance(context, dict):
                error = context.get("error") or {}
            elif context is not None:
                error = getattr(context, "error", None) or {}
            message = str(error.get("message", ""))
            code = str(error.get("code", ""))
            if "timeout" in message.lower() or "timeout" in code.lower():
                error_type = "bot_timeout"
            elif message or code:
                error_type = "bot_error"
            else:
                error_type = "other"
            log("HandleBotError: %s %s" % (error_type, message[:200]))
            return {"success": "true", "error_type": error_type, save_to: message or code}
        except Exception as err:
            log("HandleBotError failed: %s" % err)
            return {"success": "true", "error_type": "other", save_to: str(err)}
'''

_USER_PLATFORM_ROUTING = '''\
# -*- coding: utf-8 -*-
"""Route by the user's device platform (node 10).

Decision Variable: success
What Next?: ios~100|android~100|mac~100|windows~100|other~100
"""


class UserPlatformRouting:
    PLATFORMS = (("iOS", "ios"), ("Android", "android"), ("Mac", "mac"), ("Windows", "windows"))

    def execute(self, log, payload=None, context=None):
        try:
            platform = context["user_data"]["platform"] or ""
        except (KeyError, TypeError):
            platform = ""
        for marker, label in self.PLATFORMS:
            if marker in platform:
                log("UserPlatformRouting: %s" % label)
                return {"success": label, "USER_PLATFORM": label}
        return {"success": "other", "USER_PLATFORM": "other"}
'''

_GENAI_FALLBACK = '''\
# -*- coding: utf-8 -*-
"""Intent recovery for unmatched input (node 1800).

Rewrites a follow-up utterance using the previous turn so pronouns and
elliptical questions resolve against the conversation context.

Decision Variable: success
What Next?: true~1800|false~99990
"""

import re


class GenAIFallback:
    PRONOUNS = re.compile(r"\\b(it|that|this|they|them|those)\\b", re.IGNORECASE)

    def execute(self, log, payload=None, context=None):
        payload = payload or {}
        utterance = (payload.get("user_input") or "").strip()
        previous = (payload.get("last_topic") or "").strip()
        if not utterance:
            return {"success": "false"}
        resolved = utterance
        if previous and self.PRONOUNS.search(utterance):
            resolved = self.PRONOUNS.sub(previous, utterance, count=1)
        log("GenAIFallback: %r -> %r" % (utterance, resolved))
        return {"success": "true", "RESOLVED_INPUT": resolved, "LAST_TOPIC": previous or utterance}
'''

_VALIDATE_REGEX = '''\
# -*- coding: utf-8 -*-
"""Validate user input against a named or custom regular expression.

Parameter Input: {"regex": "email", "input": "{USER_INPUT}"}
Decision Variable: success
"""

import re


class ValidateRegex:
    NAMED = {
        "email": r"^[^@\\s]+@[^@\\s]+\\.[a-zA-Z]{2,}$",
        "phone": r"^\\+?[0-9 ()-]{7,20}$",
        "zip": r"^[0-9]{5}(-[0-9]{4})?$",
    }

    def execute(self, log, payload=None, context=None):
        payload = payload or {}
        pattern = self.NAMED.get(payload.get("regex", ""), payload.get("regex", ""))
        value = str(payload.get("input", "")).strip()
        try:
            ok = bool(pattern) and re.match(pattern, value) is not None
        except re.error as err:
            log("ValidateRegex: bad pattern %r: %s" % (pattern, err))
            ok = False
        return {"success": "true" if ok else "false"}
'''


STARTUP_SCRIPTS: tuple[StartupScript, ...] = (
    StartupScript(
        name="HandleBotError",
        description="Global error handler; classifies unhandled exceptions and routes to the error node.",
        content=_HANDLE_BOT_ERROR,
        critical=True,
        used_by_nodes=(-500,),
    ),
    StartupScript(
        name="UserPlatformRouting",
        description="Detects the user's platform (iOS/Android/Mac/Windows) and routes accordingly.",
        content=_USER_PLATFORM_ROUTING,
        critical=True,
        used_by_nodes=(10,),
    ),
    StartupScript(
        name="GenAIFallback",
        description="Contextual intent recovery for unmatched input.",
        content=_GENAI_FALLBACK,
        critical=True,
        used_by_nodes=(1800,),
    ),
    StartupScript(
        name="ValidateRegex",
        description="Validates user input (email, phone, zip or a custom pattern).",
        content=_VALIDATE_REGEX,
    ),
)


class ScriptRegistry:
    """Name → bundled script lookup with a fixed critical set."""

    def __init__(self, scripts: tuple[StartupScript, ...] | list[StartupScript] = STARTUP_SCRIPTS) -> None:
        self._scripts = list(scripts)
        self._by_name = {s.name: s for s in self._scripts}

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self):
        return iter(self._scripts)

    def get(self, name: str) -> StartupScript | None:
        return self._by_name.get(name)

    @property
    def critical_names(self) -> frozenset[str]:
        return frozenset(s.name for s in self._scripts if s.critical)

    def validate(self) -> list[str]:
        """Problems that make the registry unusable; empty when consistent."""
        problems: list[str] = []
        seen: set[str] = set()
        for s in self._scripts:
            if s.name in seen:
                problems.append(f"duplicate script name: {s.name}")
            seen.add(s.name)
            if len(s.content.strip()) < MIN_SCRIPT_LENGTH:
                problems.append(f"{s.name}: content missing or too short")
            elif not re.search(rf"^class {re.escape(s.name)}\b", s.content, re.MULTILINE):
                problems.append(f"{s.name}: no class named {s.name}")
        if not self.critical_names:
            problems.append("no critical scripts registered")
        return problems


def default_registry() -> ScriptRegistry:
    return ScriptRegistry(STARTUP_SCRIPTS)


def validate_critical_scripts(registry: ScriptRegistry | None = None) -> tuple[bool, list[str]]:
    """(valid, problems) for the bundled registry."""
    problems = (registry or default_registry()).validate()
    for p in problems:
        logger.error("Startup script registry: %s", p)
    return not problems, problems
