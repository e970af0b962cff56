# This project was developed with assistance from AI tools.
"""
Workflow engine configuration.

All settings read from environment variables with sensible local defaults.
Rule thresholds themselves live in a JSON rules file (see RULES_FILE);
only the file location is configured here.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings -- single source of truth for env-driven config."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -- App --
    APP_NAME: str = "loan-workflow"
    LOG_LEVEL: str = "INFO"

    # -- Session locking --
    LOCK_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        gt=0,
        description="Age after which a held session lock is considered stale and reclaimed.",
    )

    # -- Underwriting rules --
    RULES_FILE: Path | None = Field(
        default=None,
        description="Path to a JSON rules file. Packaged default_rules.json when unset.",
    )

    # -- Manual review --
    DEFAULT_REVIEWER: str = Field(
        default="system",
        description="Reviewer recorded when a manual review decision names nobody.",
    )


settings = Settings()
