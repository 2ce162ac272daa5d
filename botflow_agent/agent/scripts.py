"""Script resolution: every script a flow references must ship with the deploy.

Resolution order per identifier:

  1. bundled registry (botflow_agent.data.startup_scripts)
  2. custom scripts produced by the generator alongside the flow
  3. remote script store, all remaining misses fetched concurrently

The registry's critical set is always resolved, whether or not a row
references it: global and startup nodes call those scripts from places the
row scan cannot see. Critical misses abort the run only after every remote
lookup has settled.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from botflow_agent.agent.errors import ScriptResolutionError
from botflow_agent.agent.ports import ScriptSource
from botflow_agent.data.startup_scripts import ScriptRegistry, default_registry
from botflow_agent.flow.model import COMMAND, FlowGraph

logger = logging.getLogger("botflow_agent.agent.scripts")

BUILTIN_COMMANDS: frozenset[str] = frozenset({
    "SysAssignVariable",
    "SysMultiMatchRouting",
    "SysSetEnv",
    "SysShowMetadata",
    "SysVariableReset",
    "SysSendEmail",
    "SysHttpRequest",
})


def scan_script_references(graph: FlowGraph, builtins: Iterable[str] = BUILTIN_COMMANDS) -> list[str]:
    """Script names referenced by Action rows, in first-seen order."""
    allow = set(builtins)
    col = graph.column(COMMAND)
    if col is None:
        return []
    names: list[str] = []
    for node in graph:
        if not node.is_action:
            continue
        name = node.fields.get(col, "").strip()
        if name and name not in allow and name not in names:
            names.append(name)
    return names


@dataclass
class ScriptResolution:
    scripts: dict[str, str] = field(default_factory=dict)
    sources: dict[str, str] = field(default_factory=dict)  # name → "bundled" | "custom" | "remote"
    missing: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class ScriptResolver:
    def __init__(
        self,
        registry: ScriptRegistry | None = None,
        remote: ScriptSource | None = None,
        timeout: float = 15.0,
        critical: Iterable[str] | None = None,
    ) -> None:
        self.registry = registry or default_registry()
        self.critical = frozenset(critical) if critical is not None else self.registry.critical_names
        self.remote = remote
        self.timeout = timeout

    async def resolve(
        self,
        graph: FlowGraph,
        custom_scripts: Mapping[str, str] | None = None,
    ) -> ScriptResolution:
        """Resolve every referenced script plus the critical set.

        Raises ScriptResolutionError when a critical script is unavailable
        from every source.
        """
        custom = dict(custom_scripts or {})
        critical = self.critical
        wanted = scan_script_references(graph)
        wanted += sorted(n for n in critical if n not in wanted)

        result = ScriptResolution()
        remote_needed: list[str] = []
        for name in wanted:
            bundled = self.registry.get(name)
            if bundled is not None:
                result.scripts[name] = bundled.content
                result.sources[name] = "bundled"
            elif custom.get(name, "").strip():
                result.scripts[name] = custom[name]
                result.sources[name] = "custom"
            else:
                remote_needed.append(name)

        if remote_needed and self.remote is not None:
            logger.info("Fetching %d script(s) from the remote store: %s", len(remote_needed), ", ".join(remote_needed))
            fetched = await asyncio.gather(
                *(asyncio.wait_for(self.remote.fetch_script(n), timeout=self.timeout) for n in remote_needed),
                return_exceptions=True,
            )
            for name, outcome in zip(remote_needed, fetched):
                if isinstance(outcome, BaseException):
                    logger.warning("Remote lookup for %s failed: %s", name, str(outcome) or type(outcome).__name__)
                    result.missing.append(name)
                elif outcome:
                    result.scripts[name] = outcome
                    result.sources[name] = "remote"
                else:
                    result.missing.append(name)
        else:
            result.missing.extend(remote_needed)

        critical_missing = [n for n in result.missing if n in critical]
        if critical_missing:
            raise ScriptResolutionError(critical_missing)
        for name in result.missing:
            message = f"Script {name} not found in bundle, generator output or remote store"
            logger.warning(message)
            result.warnings.append(message)

        logger.info(
            "Resolved %d script(s) (%d missing)",
            len(result.scripts), len(result.missing),
        )
        return result
