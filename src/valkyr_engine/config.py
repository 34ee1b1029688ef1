"""Configuration management for the Valkyr engine."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_CONFIG_FILENAMES = (".valkyr.json", ".valkyr.yaml", ".valkyr.yml")


class EngineSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    git_path: str | None = Field(default=None, validation_alias="GIT_PATH")
    log_level: str = Field(default="INFO", validation_alias="VALKYR_LOG_LEVEL")
    config_filenames: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_CONFIG_FILENAMES, validation_alias="VALKYR_CONFIG_FILENAMES"
    )
    untracked_linecount_max_bytes: int = Field(
        default=512 * 1024, validation_alias="VALKYR_UNTRACKED_LINECOUNT_MAX_BYTES"
    )
    untracked_diff_max_bytes: int = Field(
        default=512 * 1024, validation_alias="VALKYR_UNTRACKED_DIFF_MAX_BYTES"
    )
    diff_context_lines: int = Field(default=3, validation_alias="VALKYR_DIFF_CONTEXT_LINES")
    status_debounce_seconds: float = Field(
        default=0.5, validation_alias="VALKYR_STATUS_DEBOUNCE_SECONDS"
    )
    stop_grace_seconds: float = Field(default=5.0, validation_alias="VALKYR_STOP_GRACE_SECONDS")
    event_history_size: int = Field(default=500, validation_alias="VALKYR_EVENT_HISTORY_SIZE")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "VALKYR_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("config_filenames", mode="before")
    @classmethod
    def _parse_config_filenames(cls, value):
        if value is None or value == "":
            return DEFAULT_CONFIG_FILENAMES
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(parts) or DEFAULT_CONFIG_FILENAMES
        raise ValueError(
            "VALKYR_CONFIG_FILENAMES must be a list of names or a path-separated string"
        )

    @field_validator(
        "untracked_linecount_max_bytes", "untracked_diff_max_bytes", "event_history_size"
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("byte budgets and history sizes must be >= 1")
        return value

    @field_validator("diff_context_lines")
    @classmethod
    def _validate_context(cls, value: int) -> int:
        if value < 0:
            raise ValueError("VALKYR_DIFF_CONTEXT_LINES must be >= 0")
        return value

    @field_validator("status_debounce_seconds", "stop_grace_seconds")
    @classmethod
    def _validate_seconds(cls, value: float) -> float:
        if value < 0:
            raise ValueError("durations must not be negative")
        return value


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Return cached settings instance."""

    return EngineSettings()


__all__ = ["DEFAULT_CONFIG_FILENAMES", "EngineSettings", "get_settings"]
