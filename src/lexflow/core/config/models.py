"""
Configuration data models for LexFlow.

These models define the structure of .lexflow.json and
~/.config/lexflow/config.json files, with validation via Pydantic.
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def get_xdg_data_home() -> Path:
    if xdg_home := os.environ.get("XDG_DATA_HOME"):
        return Path(xdg_home)
    return Path.home() / ".local" / "share"


class SubmissionConfig(BaseModel):
    """
    Remote collection endpoint settings.

    The endpoint URL is read-only from the queue's point of view; it is
    validated at submission time so a bad value surfaces as a classified
    configuration error instead of a load failure.
    """
    endpoint_url: Optional[str] = Field(
        default=None,
        description="HTTPS URL of the collection endpoint"
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Deadline for a single submission request"
    )

    @field_validator("endpoint_url", mode="before")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v


class RetryConfig(BaseModel):
    """
    Automatic retry policy for failed submissions.

    Delays grow as 2**attempt * base_delay_ms.
    """
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Automatic attempts per (capture, error kind) before giving up"
    )
    base_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Backoff base unit in milliseconds"
    )
    auto_retry: bool = Field(
        default=True,
        description="Schedule automatic retries for retryable failures"
    )


class StorageConfig(BaseModel):
    """Capture queue storage."""
    db_path: Optional[str] = Field(
        default=None,
        description="SQLite database path (default: ~/.local/share/lexflow/queue.db)"
    )
    fallback_to_memory: bool = Field(
        default=True,
        description="Switch to an in-memory store when the database is unavailable"
    )

    def resolve_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path).expanduser()
        return get_xdg_data_home() / "lexflow" / "queue.db"


class CurationConfig(BaseModel):
    """Defaults applied by the curator when a capture lacks a value."""
    default_title: str = Field(default="Untitled Extract")
    default_jurisdiction: str = Field(default="unknown")
    default_language: str = Field(default="pt-BR")
    license: str = Field(default="public-domain")
    capture_mode: str = Field(default="lexflow-extension")


class LoggingConfig(BaseModel):
    level: str = Field(
        default="WARNING",
        description="Log level for the CLI (DEBUG, INFO, WARNING, ERROR)"
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level '{v}', expected one of {VALID_LOG_LEVELS}")
        return level


class LexflowConfig(BaseModel):
    """
    Top-level LexFlow configuration.

    Loaded from defaults, user config, project config, and env vars.

    Example:
        >>> config = LexflowConfig(
        ...     submission=SubmissionConfig(endpoint_url="https://collector.example.org/submit"),
        ...     retry=RetryConfig(max_retries=5),
        ... )
        >>> config.retry.base_delay_ms
        1000
    """
    submission: SubmissionConfig = Field(
        default_factory=SubmissionConfig,
        description="Remote endpoint settings"
    )
    retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Automatic retry policy"
    )
    storage: StorageConfig = Field(
        default_factory=StorageConfig,
        description="Queue storage"
    )
    curation: CurationConfig = Field(
        default_factory=CurationConfig,
        description="Curation defaults"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging"
    )

    model_config = ConfigDict(
        extra="allow",  # Allow extra fields for forward compatibility
        validate_assignment=True,
    )
