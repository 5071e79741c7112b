"""
Centralized configuration management for codeatlas.

Process-level settings are loaded from the environment with pydantic-settings.
Per-run options live in ``PipelineRunConfig`` (see ``data.schemas``).
"""

from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .util.errors import ConfigurationError


class PipelineSettings(BaseSettings):
    """Orchestrator limits and housekeeping cadence."""

    max_concurrent_pipelines: int = 3
    completed_retention_seconds: float = 3600.0
    housekeeping_interval_seconds: float = 900.0
    step_history_limit: int = 1000
    error_history_limit: int = 100
    progress_history_limit: int = 1000
    progress_history_trim_to: int = 500
    index_dir: Path = Field(default_factory=lambda: Path.cwd() / ".codeatlas")

    @field_validator("max_concurrent_pipelines", "step_history_limit", "error_history_limit")
    @classmethod
    def validate_positive(cls, v):
        """Limits must allow at least one entry."""
        if v <= 0:
            raise ValueError("limit must be positive")
        return v

    @field_validator("progress_history_trim_to")
    @classmethod
    def validate_trim(cls, v, info):
        """Trimming must keep fewer entries than the cap."""
        limit = info.data.get("progress_history_limit", 1000)
        if not 0 < v <= limit:
            raise ValueError("progress_history_trim_to must be in (0, progress_history_limit]")
        return v

    model_config = SettingsConfigDict(env_prefix="CODEATLAS_PIPELINE_")


class AISettings(BaseSettings):
    """LLM and embedding provider credentials and endpoints."""

    google_api_key: str | None = Field(
        default=None, validation_alias=AliasChoices("GOOGLE_API_KEY", "CODEATLAS_GOOGLE_API_KEY")
    )
    gemini_api_key: str | None = Field(
        default=None, validation_alias=AliasChoices("GEMINI_API_KEY", "CODEATLAS_GEMINI_API_KEY")
    )
    openai_api_key: str | None = Field(
        default=None, validation_alias=AliasChoices("OPENAI_API_KEY", "CODEATLAS_OPENAI_API_KEY")
    )
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        validation_alias=AliasChoices("OPENAI_BASE_URL", "CODEATLAS_OPENAI_BASE_URL"),
    )
    request_timeout_seconds: float = Field(
        default=60.0, validation_alias=AliasChoices("CODEATLAS_AI_REQUEST_TIMEOUT")
    )
    enrichment_temperature: float = 0.3
    enrichment_max_output_tokens: int = 300

    @property
    def google_key(self) -> str | None:
        """Get the Google key, preferring GOOGLE_API_KEY over GEMINI_API_KEY."""
        return self.google_api_key or self.gemini_api_key

    @field_validator("enrichment_temperature")
    @classmethod
    def validate_temperature(cls, v):
        """Validate temperature is in valid range."""
        if not 0.0 <= v <= 2.0:
            raise ValueError("Temperature must be between 0.0 and 2.0")
        return v

    model_config = SettingsConfigDict(env_prefix="CODEATLAS_AI_", populate_by_name=True)


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["structured", "human"] = "structured"
    log_file: str | None = None

    model_config = SettingsConfigDict(env_prefix="CODEATLAS_")


class CodeAtlasSettings(BaseSettings):
    """Top-level settings aggregating all subsystems."""

    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    ai: AISettings = Field(default_factory=AISettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(case_sensitive=False)

    @classmethod
    def load_from_env(cls) -> "CodeAtlasSettings":
        """Load settings from environment variables."""
        try:
            return cls()
        except ValidationError as e:
            first = e.errors()[0]
            key = ".".join(str(part) for part in first.get("loc", ())) or "settings"
            raise ConfigurationError(key, first.get("msg", str(e)), cause=e) from e


_settings: CodeAtlasSettings | None = None


def get_settings() -> CodeAtlasSettings:
    """Get the process settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = CodeAtlasSettings.load_from_env()
    return _settings


def set_settings(settings: CodeAtlasSettings) -> None:
    """Replace the process settings."""
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Forget cached settings so the next read reloads the environment."""
    global _settings
    _settings = None
