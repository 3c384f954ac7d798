"""Typed configuration for an integration run.

``config.yaml`` is parsed with PyYAML and validated into :class:`RunConfig`.
Secrets never live in the file; API keys are read from the environment by the
clients that need them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .changes import RunMode


class ConfigModel(BaseModel):
    """Base model rejecting unknown keys."""

    model_config = ConfigDict(extra="forbid")


class ProjectConfig(ConfigModel):
    repo_root: str = "."
    task: str = ""


class RunSection(ConfigModel):
    mode: Optional[RunMode] = None
    allowed_paths: List[str] = Field(default_factory=list)
    context_files: List[str] = Field(default_factory=list)
    max_report_lines: int = Field(default=120, ge=1)

    @field_validator("mode", mode="before")
    @classmethod
    def _upper_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper() or None
        return value


class ModelsConfig(ConfigModel):
    default: str = "gpt-4o-mini"
    base_url: str = "https://api.openai.com/v1/responses"
    api_key_env: str = "OPENAI_API_KEY"
    timeout: float = Field(default=120.0, gt=0)
    max_attempts: int = Field(default=2, ge=1)
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None


class ValidationConfig(ConfigModel):
    commands: List[List[str]] = Field(default_factory=list)
    manifests: List[str] = Field(default_factory=lambda: ["*.json", "*.yaml", "*.yml", "*.toml"])
    timeout: float = Field(default=900.0, gt=0)
    log_max_chars: int = Field(default=40_000, ge=1)

    @field_validator("commands", mode="before")
    @classmethod
    def _split_commands(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [entry.split() if isinstance(entry, str) else entry for entry in value]


class LogsConfig(ConfigModel):
    provider: str = "vercel"
    project_id: Optional[str] = None
    team_id: Optional[str] = None
    token_env: str = "VERCEL_TOKEN"
    base_url: str = "https://api.vercel.com"
    timeout: float = Field(default=30.0, gt=0)
    retries: int = Field(default=3, ge=1)
    max_chars: int = Field(default=40_000, ge=1)


class GitConfig(ConfigModel):
    commit_message: str = "chore(patchloop): apply generated change"
    push: bool = False
    remote: str = "origin"
    branch: Optional[str] = None


class RunConfig(ConfigModel):
    """Complete configuration passed explicitly into the orchestrator."""

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    run: RunSection = Field(default_factory=RunSection)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    logs: LogsConfig = Field(default_factory=LogsConfig)
    git: GitConfig = Field(default_factory=GitConfig)


class ConfigError(ValueError):
    """Raised when the configuration file is missing or malformed."""


def load_config(config_path: Path | str) -> RunConfig:
    """Read ``config_path`` and validate it into a :class:`RunConfig`."""

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return parse_config(data)


def parse_config(data: Dict[str, Any]) -> RunConfig:
    try:
        return RunConfig.model_validate(data)
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration: {error}") from error


def resolve_repo_root(config: RunConfig, config_path: Path | str | None) -> Path:
    """Resolve ``project.repo_root`` relative to the config file location."""

    root = Path(config.project.repo_root)
    if root.is_absolute():
        return root.resolve()
    base = Path(config_path).resolve().parent if config_path else Path.cwd()
    return (base / root).resolve()


__all__ = [
    "ConfigError",
    "GitConfig",
    "LogsConfig",
    "ModelsConfig",
    "ProjectConfig",
    "RunConfig",
    "RunSection",
    "ValidationConfig",
    "load_config",
    "parse_config",
    "resolve_repo_root",
]
