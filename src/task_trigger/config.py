"""Configuration for the task runtime.

Configuration is loaded from:
- environment variables (prefixed with `TASK_TRIGGER_`)
- and a local `.env` file (if present)

Nothing here is required: every field has a default so the runtime can start
with an in-memory run store and no API authentication.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TaskTriggerSettings(BaseSettings):
    """Settings for the dispatcher, run store and HTTP surfaces.

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `TaskTriggerSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(default="INFO", description="Root logging level")
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format: one JSON object per line, or plain text",
    )

    default_max_attempts: int = Field(
        default=1,
        ge=1,
        description="Attempts per run when the trigger does not set max_attempts",
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Delay before the second attempt of a failed run",
    )
    retry_factor: float = Field(
        default=2.0,
        ge=1.0,
        description="Multiplier applied to the retry delay after every failed attempt",
    )
    retry_max_delay_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound for the delay between two attempts",
    )

    idempotency_ttl_seconds: float | None = Field(
        default=86400.0,
        gt=0,
        description=(
            "How long a finished run keeps its idempotency key. "
            "Leave empty to never expire keys."
        ),
    )
    wait_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Default timeout for trigger_and_wait callers (empty = wait forever)",
    )

    run_store_path: Path | None = Field(
        default=None,
        description="Persist runs to this JSON file instead of keeping them in memory",
    )

    secret_key: str = Field(
        default="",
        description="Bearer token required by the HTTP API (empty disables auth)",
    )
    api_base_url: str = Field(
        default="http://127.0.0.1:8000",
        description="Base URL used by the HTTP API client",
    )

    model_config = SettingsConfigDict(
        env_prefix="TASK_TRIGGER_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("idempotency_ttl_seconds", "wait_timeout_seconds", "run_store_path", mode="before")
    @classmethod
    def _empty_is_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def retry_delay(self, attempt: int) -> float:
        """Delay to wait after failed attempt number `attempt` (1-based)."""

        delay = self.retry_base_delay_seconds * self.retry_factor ** max(0, attempt - 1)
        return min(delay, self.retry_max_delay_seconds)
