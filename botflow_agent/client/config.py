"""Configuration for the external service clients."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

SANDBOX_ENGAGEMENT_ENDPOINT = "https://engagement-api-sandbox.pypestream.com"
LIVE_ENGAGEMENT_ENDPOINT = "https://engagement-api.pypestream.com"


@dataclass(frozen=True)
class Settings:
    """Immutable settings loaded from environment variables."""

    api_token: str = field(repr=False)
    botmanager_endpoint: str = "http://localhost:8080/api/botmanager"
    engagement_endpoint: str = SANDBOX_ENGAGEMENT_ENDPOINT
    scripts_endpoint: str = ""
    learning_endpoint: str = ""
    learning_api_key: str = field(default="", repr=False)
    timeout: int = 120
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            api_token=os.getenv("BOTMANAGER_API_TOKEN", "").strip(),
            botmanager_endpoint=os.getenv(
                "BOTMANAGER_API_ENDPOINT", "http://localhost:8080/api/botmanager"
            ).rstrip("/"),
            engagement_endpoint=os.getenv(
                "ENGAGEMENT_API_ENDPOINT", SANDBOX_ENGAGEMENT_ENDPOINT
            ).rstrip("/"),
            scripts_endpoint=os.getenv("ACTION_SCRIPTS_ENDPOINT", "").rstrip("/"),
            learning_endpoint=os.getenv("ERROR_LEARNING_ENDPOINT", "").rstrip("/"),
            learning_api_key=os.getenv("ERROR_LEARNING_API_KEY", ""),
            timeout=int(os.getenv("BOTFLOW_TIMEOUT", "120")),
            log_level=os.getenv("BOTFLOW_LOG_LEVEL", "WARNING").upper(),
        )

    @property
    def headers(self) -> dict[str, str]:
        h: dict[str, str] = {"Content-Type": "application/json"}
        if self.api_token:
            h["Authorization"] = f"Bearer {self.api_token}"
        return h

    def engagement_for(self, environment: str) -> str:
        """Runtime endpoint for a deploy environment, unless overridden explicitly."""
        if self.engagement_endpoint not in (SANDBOX_ENGAGEMENT_ENDPOINT, LIVE_ENGAGEMENT_ENDPOINT):
            return self.engagement_endpoint
        if environment == "production":
            return LIVE_ENGAGEMENT_ENDPOINT
        return SANDBOX_ENGAGEMENT_ENDPOINT
