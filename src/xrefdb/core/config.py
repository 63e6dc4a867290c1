"""Configuration system for xrefdb using Pydantic."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class IndexConfig(BaseModel):
    """Incremental builder configuration."""

    # Stale artifacts above this count are merged in an in-memory store
    memory_threshold: int = Field(default=100, ge=0)
    parse_workers: int = Field(default=1, ge=1)
    artifact_suffixes: list[str] = Field(default_factory=lambda: [".ali", ".xref"])

    @field_validator("artifact_suffixes")
    @classmethod
    def _lowercase_suffixes(cls, value: list[str]) -> list[str]:
        return [s.lower() if s.startswith(".") else f".{s.lower()}" for s in value]


class StoreConfig(BaseModel):
    """SQLite connection pragmas for on-disk stores."""

    journal_mode: Literal["WAL", "DELETE", "TRUNCATE", "PERSIST", "MEMORY", "OFF"] = "WAL"
    synchronous: Literal["OFF", "NORMAL", "FULL", "EXTRA"] = "NORMAL"


class XrefConfig(BaseModel):
    """Root configuration model."""

    index: IndexConfig = Field(default_factory=IndexConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)


class EnvSettings(BaseSettings):
    """Environment variable overrides."""

    model_config = SettingsConfigDict(
        env_prefix="XREFDB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"
    memory_threshold: int | None = None
    parse_workers: int | None = None


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dicts, override wins on conflicts."""
    result = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load a YAML config file, return empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def _resolve_env_vars(value: Any) -> Any:
    """Recursively replace ${ENV_VAR} references with actual env values.

    If an env var is not set, the placeholder is preserved as-is.
    """
    if isinstance(value, str):
        pattern = re.compile(r"\$\{(\w+)\}")
        return pattern.sub(
            lambda m: os.environ.get(m.group(1), m.group(0)),
            value,
        )
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


def load_config(project_dir: Path | None = None) -> XrefConfig:
    """Load configuration with layered precedence.

    Order (later overrides earlier):
    1. Built-in defaults (Pydantic defaults)
    2. ~/.xrefdb/config.yaml (global user config)
    3. .xrefdb/config.yaml (project-level config)
    4. Environment variables (XREFDB_MEMORY_THRESHOLD, XREFDB_PARSE_WORKERS)
    """
    global_config_dir = Path.home() / ".xrefdb"
    project_config_dir = (project_dir or Path.cwd()) / ".xrefdb"

    merged: dict[str, Any] = {}
    for config_path in [
        global_config_dir / "config.yaml",
        project_config_dir / "config.yaml",
    ]:
        layer = load_yaml_config(config_path)
        merged = _deep_merge(merged, layer)

    config = XrefConfig(**_resolve_env_vars(merged))

    env = EnvSettings()
    index_overrides: dict[str, Any] = {}
    if env.memory_threshold is not None:
        index_overrides["memory_threshold"] = env.memory_threshold
    if env.parse_workers is not None:
        index_overrides["parse_workers"] = env.parse_workers
    if index_overrides:
        index = IndexConfig.model_validate({**config.index.model_dump(), **index_overrides})
        config = config.model_copy(update={"index": index})

    return config
