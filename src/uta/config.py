"""Configuration models and YAML loading for the test generation engine."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_CONFIG_NAME = "uta.yaml"


class ConfigurationError(ValueError):
    """Raised when configuration is missing, malformed or out of range."""


class ConfigModel(BaseModel):
    """Base model that rejects unknown keys and accepts field names or aliases."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class EngineConfig(ConfigModel):
    """Knobs for the generate-verify-repair loop and the batch coordinator."""

    max_attempts: int = Field(3, alias="maxAttempts", ge=1)
    concurrency_limit: int = Field(2, alias="concurrencyLimit", ge=1)
    per_test_timeout: float = Field(10.0, alias="perTestTimeout", gt=0)
    per_suite_timeout: float = Field(120.0, alias="perSuiteTimeout", gt=0)
    include_accessors: bool = Field(False, alias="includeAccessorsInResolution")
    backoff_base: float = Field(0.5, alias="backoffBase", ge=0)
    backoff_cap: float = Field(8.0, alias="backoffCap", ge=0)
    generation_timeout: float = Field(120.0, alias="generationTimeout", gt=0)
    max_generation_retries: int = Field(3, alias="maxGenerationRetries", ge=0)
    history_window: int = Field(3, alias="historyWindow", ge=1)
    history_budget_chars: int = Field(12000, alias="historyBudgetChars", ge=200)
    collect_coverage: bool = Field(True, alias="collectCoverage")
    min_line_coverage: float = Field(80.0, alias="minLineCoverage", ge=0, le=100)
    min_branch_coverage: float = Field(70.0, alias="minBranchCoverage", ge=0, le=100)


class ProjectConfig(ConfigModel):
    name: str = ""
    repo_root: str = "."
    source_roots: List[str] = Field(default_factory=lambda: ["src", "."])
    tests_dir: str = "tests"

    @field_validator("source_roots")
    @classmethod
    def _non_empty_roots(cls, value: List[str]) -> List[str]:
        cleaned = [entry.strip() for entry in value if entry and entry.strip()]
        if not cleaned:
            raise ValueError("source_roots must list at least one directory")
        return cleaned


class ModelsConfig(ConfigModel):
    default: str = "gpt-5-mini"
    timeout: float = Field(120.0, gt=0)
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    max_output_tokens: int = Field(4000, ge=256)
    max_attempts: int = Field(3, ge=1)
    retry_delay: float = Field(0.5, ge=0)


class PathsConfig(ConfigModel):
    data: str = ".uta"
    logs: str = ".uta/logs"
    scratch: Optional[str] = None


class AppConfig(ConfigModel):
    """Top-level configuration document stored in ``uta.yaml``."""

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)

    def repo_root(self, base: Path) -> Path:
        """Resolve the project root relative to the directory holding the config."""
        root = Path(self.project.repo_root).expanduser()
        if not root.is_absolute():
            root = base / root
        return root.resolve()

    def resolve_path(self, value: str, repo_root: Path) -> Path:
        candidate = Path(value).expanduser()
        if not candidate.is_absolute():
            candidate = repo_root / candidate
        return candidate.resolve()

    def data_root(self, repo_root: Path) -> Path:
        return self.resolve_path(self.paths.data, repo_root)

    def logs_root(self, repo_root: Path) -> Path:
        return self.resolve_path(self.paths.logs, repo_root)

    def scratch_root(self, repo_root: Path) -> Optional[Path]:
        if not self.paths.scratch:
            return None
        return self.resolve_path(self.paths.scratch, repo_root)


def default_config_document(project_name: str = "") -> Dict[str, Any]:
    """Return the YAML-ready mapping written by ``uta init``."""
    engine = EngineConfig().model_dump(by_alias=True)
    return {
        "project": {**ProjectConfig().model_dump(), "name": project_name},
        "engine": engine,
        "models": ModelsConfig().model_dump(exclude_none=True),
        "paths": PathsConfig().model_dump(exclude_none=True),
    }


def parse_config(data: Mapping[str, Any] | None) -> AppConfig:
    """Validate a raw mapping, translating pydantic errors."""
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ConfigurationError("Configuration must be a mapping at the top level.")
    try:
        return AppConfig.model_validate(dict(data))
    except ValidationError as error:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in item['loc'])}: {item['msg']}" for item in error.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from error


def load_config(config_path: Path | str) -> AppConfig:
    """Load YAML configuration from disk and validate it."""
    path = Path(config_path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigurationError(f"Failed to parse config: {error}") from error
    return parse_config(data)


def write_config(config_path: Path | str, document: Mapping[str, Any]) -> Path:
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(document), handle, sort_keys=False)
    return path


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "DEFAULT_CONFIG_NAME",
    "EngineConfig",
    "ModelsConfig",
    "PathsConfig",
    "ProjectConfig",
    "default_config_document",
    "load_config",
    "parse_config",
    "write_config",
]
