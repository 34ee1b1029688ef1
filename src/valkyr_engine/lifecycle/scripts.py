"""Project configuration lookup for lifecycle scripts.

Scripts live in a configuration file at the project root (``.valkyr.json`` by
default, YAML variants accepted)::

    {"scripts": {"setup": "npm ci", "run": "npm run dev", "teardown": "docker compose down"}}
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..config import DEFAULT_CONFIG_FILENAMES
from .models import LifecyclePhase

logger = logging.getLogger(__name__)


class ConfigLoadError(RuntimeError):
    """Raised when a project configuration file cannot be parsed."""


class LifecycleScripts(BaseModel):
    """Shell command per lifecycle phase; blank commands count as absent."""

    setup: str | None = Field(default=None, description="Finite install/prepare step.")
    run: str | None = Field(default=None, description="Long-lived dev process.")
    teardown: str | None = Field(default=None, description="Finite cleanup step.")

    @field_validator("setup", "run", "teardown", mode="before")
    @classmethod
    def _normalize_command(cls, value: Any) -> str | None:
        if value is None:
            return None
        if not isinstance(value, str):
            raise ValueError("Lifecycle scripts must be strings")
        stripped = value.strip()
        return stripped or None


class ProjectConfig(BaseModel):
    """Contents of a project's engine configuration file."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    preserve_patterns: list[str] = Field(
        default_factory=list,
        validation_alias="preservePatterns",
        description="Untracked files copied into new worktrees by the worktree manager.",
    )
    scripts: LifecycleScripts = Field(default_factory=LifecycleScripts)


def load_project_config(path: Path) -> ProjectConfig:
    """Parse one configuration file, raising :class:`ConfigLoadError` on bad input."""

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Failed to read {path}: {exc}") from exc

    try:
        if path.suffix == ".json":
            document = json.loads(text)
        else:
            document = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigLoadError(f"Failed to parse {path}: {exc}") from exc

    if document is None:
        return ProjectConfig()
    try:
        return ProjectConfig.model_validate(document)
    except ValidationError as exc:
        raise ConfigLoadError(f"Configuration validation error in {path}: {exc}") from exc


class LifecycleScriptsService:
    """Resolve lifecycle commands from a project's configuration file.

    The file is re-read on every lookup so edits take effect without a restart.
    The first existing file among ``filenames`` wins.
    """

    def __init__(self, filenames: Iterable[str] | None = None) -> None:
        self._filenames = tuple(filenames or DEFAULT_CONFIG_FILENAMES)

    @property
    def filenames(self) -> tuple[str, ...]:
        return self._filenames

    def config_path(self, project_path: str) -> Path | None:
        root = Path(project_path)
        for name in self._filenames:
            candidate = root / name
            if candidate.is_file():
                return candidate
        return None

    def read_config(self, project_path: str) -> ProjectConfig | None:
        path = self.config_path(project_path)
        if path is None:
            return None
        try:
            return load_project_config(path)
        except ConfigLoadError as exc:
            logger.warning(
                "Failed to read project configuration",
                extra={"project_path": project_path, "error": str(exc)},
            )
            return None

    def get_script(self, project_path: str, phase: LifecyclePhase) -> str | None:
        config = self.read_config(project_path)
        if config is None:
            return None
        return getattr(config.scripts, phase, None)


__all__ = [
    "ConfigLoadError",
    "LifecycleScripts",
    "LifecycleScriptsService",
    "ProjectConfig",
    "load_project_config",
]
