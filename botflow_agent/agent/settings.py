"""Pipeline tunables, read from the environment (or .env) via pydantic-settings."""

from __future__ import annotations

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineSettings(BaseSettings):
    """Retry caps, learning thresholds, timeouts and backends.

    Environment variables:
      REFINE_MAX_ATTEMPTS                   - validate/refine cap (default: 5)
      PROVEN_FIX_MIN_CONFIDENCE             - proven threshold (default: 0.7)
      PROVEN_FIX_MIN_APPLIED                - proven minimum applications (default: 3)
      KNOWN_FIX_MIN_CONFIDENCE              - known-fix threshold (default: 0.5)
      ERRORS_TO_AVOID_LIMIT                 - patterns injected into generation (default: 20)
      LEARNING_BACKOFF_THRESHOLD            - consecutive failures before backoff (default: 3)
      LEARNING_BACKOFF_ATTEMPT_PROBABILITY  - attempt rate while backing off (default: 0.1)
      LEARNING_BACKEND                      - "http" | "sqlite" | "memory" (default: "sqlite")
      LEARNING_DB_PATH                      - SQLite file for the sqlite backend
      DEPLOY_ENVIRONMENT                    - "sandbox" | "production" (default: "sandbox")
      HEALTH_SETTLE_SECONDS                 - wait before the health snapshot (default: 3)
      *_TIMEOUT                             - per-collaborator bounds in seconds
      EXPORT_WEBHOOK_URL                    - optional export target
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    refine_max_attempts: int = Field(default=5, ge=1, validation_alias="REFINE_MAX_ATTEMPTS")
    proven_min_confidence: float = Field(default=0.7, validation_alias="PROVEN_FIX_MIN_CONFIDENCE")
    proven_min_applied: int = Field(default=3, ge=1, validation_alias="PROVEN_FIX_MIN_APPLIED")
    known_min_confidence: float = Field(default=0.5, validation_alias="KNOWN_FIX_MIN_CONFIDENCE")
    errors_to_avoid_limit: int = Field(default=20, ge=0, validation_alias="ERRORS_TO_AVOID_LIMIT")
    proven_fixes_limit: int = Field(default=50, ge=1, validation_alias="PROVEN_FIXES_LIMIT")

    backoff_threshold: int = Field(default=3, ge=1, validation_alias="LEARNING_BACKOFF_THRESHOLD")
    backoff_attempt_probability: float = Field(
        default=0.1, validation_alias="LEARNING_BACKOFF_ATTEMPT_PROBABILITY"
    )
    learning_backend: Literal["http", "sqlite", "memory"] = Field(
        default="sqlite", validation_alias="LEARNING_BACKEND"
    )
    learning_db_path: str = Field(default="botflow_learning.db", validation_alias="LEARNING_DB_PATH")

    deploy_environment: Literal["sandbox", "production"] = Field(
        default="sandbox", validation_alias="DEPLOY_ENVIRONMENT"
    )
    health_settle_seconds: float = Field(default=3.0, ge=0, validation_alias="HEALTH_SETTLE_SECONDS")

    generator_timeout: float = Field(default=300.0, gt=0, validation_alias="GENERATOR_TIMEOUT")
    validator_timeout: float = Field(default=120.0, gt=0, validation_alias="VALIDATOR_TIMEOUT")
    deployer_timeout: float = Field(default=180.0, gt=0, validation_alias="DEPLOYER_TIMEOUT")
    repository_timeout: float = Field(default=10.0, gt=0, validation_alias="REPOSITORY_TIMEOUT")
    scripts_timeout: float = Field(default=15.0, gt=0, validation_alias="SCRIPTS_TIMEOUT")
    health_timeout: float = Field(default=30.0, gt=0, validation_alias="HEALTH_TIMEOUT")
    widget_timeout: float = Field(default=60.0, gt=0, validation_alias="WIDGET_TIMEOUT")
    export_timeout: float = Field(default=30.0, gt=0, validation_alias="EXPORT_TIMEOUT")

    export_webhook_url: str = Field(default="", validation_alias="EXPORT_WEBHOOK_URL")

    @field_validator(
        "proven_min_confidence", "known_min_confidence", "backoff_attempt_probability"
    )
    @classmethod
    def clamp_unit_interval(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    @field_validator("learning_backend", "deploy_environment", mode="before")
    @classmethod
    def lowercase(cls, v: object) -> str:
        return str(v).strip().lower()

    @classmethod
    def from_env(cls) -> PipelineSettings:
        return cls()
