"""HTTP clients for the Bot Manager gateway, conversation runtime and script store."""

from botflow_agent.client.botmanager_client import BotManagerClient
from botflow_agent.client.config import Settings
from botflow_agent.client.runtime_client import RuntimeClient
from botflow_agent.client.scripts_client import ScriptFetchError, ScriptStoreClient

__all__ = [
    "BotManagerClient",
    "RuntimeClient",
    "ScriptFetchError",
    "ScriptStoreClient",
    "Settings",
]
