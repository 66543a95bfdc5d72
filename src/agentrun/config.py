"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
Validates fields and provides typed access to settings.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Storage:
        DATABASE_PATH: SQLite file holding runs, steps and events

    Delivery:
        STREAM_POLL_INTERVAL_MS: Sleep between empty live-stream polls
        STREAM_BATCH_SIZE: Maximum events read per live-stream poll
        REPLAY_MAX_DELAY_MS: Default cap on a single replay gap
        REPLAY_MAX_SPEED: Upper bound for the replay speed multiplier

    Workflows:
        CONSENSUS_MODELS: Model ids analysed in parallel by the consensus pipeline
        CONSENSUS_MIN_ANALYSES: Successful analyses needed to form a consensus
        RESEARCH_MAX_TASKS: Maximum research tasks executed per plan
        RESEARCH_MIN_SUCCESS_RATE: Fraction of research tasks that must succeed
        MAX_CONCURRENT_BRANCHES: Concurrency limit for parallel sub-tasks
        DRY_RUN: Use the offline step services instead of live providers
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DATABASE_PATH: Path = Field(
        default=Path("data/agentrun.db"), description="SQLite database file"
    )

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON log file")

    STREAM_POLL_INTERVAL_MS: int = Field(
        default=500, ge=1, le=60_000, description="Live stream poll interval (ms)"
    )
    STREAM_BATCH_SIZE: int = Field(
        default=100, ge=1, le=1000, description="Events per live stream poll"
    )
    REPLAY_MAX_DELAY_MS: int = Field(
        default=2000, ge=0, description="Default maximum delay between replayed events"
    )
    REPLAY_MAX_SPEED: float = Field(
        default=10.0, gt=0.0, description="Maximum replay speed multiplier"
    )

    CONSENSUS_MODELS: list[str] = Field(
        default=[
            "anthropic/claude-sonnet-4.5",
            "google/gemini-2.5-pro",
            "openai/gpt-5",
        ],
        description="Models analysed in parallel by the consensus workflow",
    )
    CONSENSUS_MIN_ANALYSES: int = Field(
        default=2, ge=1, description="Minimum successful analyses for a consensus"
    )
    RESEARCH_MAX_TASKS: int = Field(
        default=5, ge=1, le=20, description="Maximum research tasks per plan"
    )
    RESEARCH_MIN_SUCCESS_RATE: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Minimum research task success rate"
    )
    MAX_CONCURRENT_BRANCHES: int = Field(
        default=4, ge=1, le=20, description="Maximum concurrent sub-tasks per step"
    )
    DRY_RUN: bool = Field(
        default=True, description="Use offline step services (no provider calls)"
    )

    API_HOST: str = Field(default="127.0.0.1", description="API bind host")
    API_PORT: int = Field(default=8000, ge=1, le=65535, description="API bind port")
    CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Allowed CORS origins",
    )

    @model_validator(mode="after")
    def validate_consensus_quorum(self) -> Settings:
        """Ensure the consensus quorum can be met by the configured models."""
        if not self.CONSENSUS_MODELS:
            raise ValueError("CONSENSUS_MODELS must list at least one model")
        if self.CONSENSUS_MIN_ANALYSES > len(self.CONSENSUS_MODELS):
            raise ValueError(
                "CONSENSUS_MIN_ANALYSES cannot exceed the number of CONSENSUS_MODELS"
            )
        return self

    @property
    def poll_interval_seconds(self) -> float:
        """Live stream poll interval in seconds."""
        return self.STREAM_POLL_INTERVAL_MS / 1000

    def ensure_directories(self) -> None:
        """Create the database directory if it doesn't exist."""
        self.DATABASE_PATH.parent.mkdir(parents=True, exist_ok=True)

    def redacted_display(self) -> dict[str, str | int | float | bool | None]:
        """Return settings for display."""
        return {
            "DATABASE_PATH": str(self.DATABASE_PATH),
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
            "STREAM_POLL_INTERVAL_MS": self.STREAM_POLL_INTERVAL_MS,
            "STREAM_BATCH_SIZE": self.STREAM_BATCH_SIZE,
            "REPLAY_MAX_DELAY_MS": self.REPLAY_MAX_DELAY_MS,
            "REPLAY_MAX_SPEED": self.REPLAY_MAX_SPEED,
            "CONSENSUS_MODELS": ", ".join(self.CONSENSUS_MODELS),
            "CONSENSUS_MIN_ANALYSES": self.CONSENSUS_MIN_ANALYSES,
            "RESEARCH_MAX_TASKS": self.RESEARCH_MAX_TASKS,
            "RESEARCH_MIN_SUCCESS_RATE": self.RESEARCH_MIN_SUCCESS_RATE,
            "MAX_CONCURRENT_BRANCHES": self.MAX_CONCURRENT_BRANCHES,
            "DRY_RUN": self.DRY_RUN,
            "API_HOST": self.API_HOST,
            "API_PORT": self.API_PORT,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Raises:
        pydantic.ValidationError: If settings are invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
