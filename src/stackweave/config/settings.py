"""
Application settings using Pydantic.

Provides environment-based configuration loading with STACKWEAVE_ prefix.
Settings are built per invocation and passed explicitly to the stack,
the scheduler and the CLI commands; nothing here is cached process-wide.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Orchestration settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STACKWEAVE_",
        extra="ignore",
    )

    # Scheduler
    concurrency: int = Field(default=4, ge=1)
    fail_fast: bool = False

    # Retry (exponential backoff for retryable provider faults)
    max_attempts: int = Field(default=4, ge=1)
    backoff_multiplier: float = Field(default=1.0, ge=0)
    backoff_max: float = Field(default=30.0, ge=0)

    # Gates
    gate_deadline_seconds: float = Field(default=600.0, gt=0)
    gate_poll_interval: float = Field(default=5.0, ge=0)

    # State
    state_file: Path = Path("stackweave.state.json")

    # Secrets
    secret_backend: Literal["memory", "aws"] = "memory"
    aws_region: str = "us-east-1"
    credentials_file: Path = Field(
        default_factory=lambda: Path.home() / ".stackweave" / "credentials.yaml"
    )
    # HMAC key for secret fingerprints; never written to the state file
    fingerprint_key_file: Path = Field(
        default_factory=lambda: Path.home() / ".stackweave" / "fingerprint.key"
    )

    # Logging
    log_level: str = "INFO"


def load_settings(**overrides: Any) -> Settings:
    """Build a fresh settings instance, applying explicit overrides last."""
    values = {key: value for key, value in overrides.items() if value is not None}
    return Settings(**values)
