"""Bundled data shipped with the agent."""

from botflow_agent.data.startup_scripts import (
    STARTUP_SCRIPTS,
    ScriptRegistry,
    StartupScript,
    default_registry,
    validate_critical_scripts,
)

__all__ = [
    "STARTUP_SCRIPTS",
    "ScriptRegistry",
    "StartupScript",
    "default_registry",
    "validate_critical_scripts",
]
