"""Top-level runtime configuration and YAML loading."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from cadence.core.config.execution import (
    BackoffConfig,
    CompactionConfig,
    PlanConfig,
    RetryConfig,
)
from cadence.core.errors import ConfigurationError


class LogConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Minimum log level to capture",
    )
    format: Literal["json", "console", "both"] = Field(
        default="console",
        description="json for structured, console for human-readable, "
        "both for console to stderr and JSON to file",
    )
    file_path: Path | None = Field(
        default=None,
        description="Path for log file output (required if format='both')",
    )
    max_file_size_mb: int = Field(default=50, gt=0, le=1000)
    backup_count: int = Field(default=5, ge=0, le=100)
    include_timestamps: bool = True
    include_context: bool = Field(
        default=True,
        description="Include run correlation ids (run_id, session_id, turn_id)",
    )

    @model_validator(mode="after")
    def _check_file_path_required(self) -> LogConfig:
        if self.format == "both" and self.file_path is None:
            raise ValueError(f"file_path is required when format='{self.format}'")
        return self


class RuntimeConfig(BaseModel):
    """Everything a RunDriver needs besides its collaborators.

    Example YAML:
        retry:
          max_api_retries: 3
          max_tool_retries: 2
        backoff:
          base_ms: 500
          jitter: 0.2
        plan:
          max_steps: 8
        logging:
          level: DEBUG
    """

    retry: RetryConfig = Field(default_factory=RetryConfig)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)
    plan: PlanConfig = Field(default_factory=PlanConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    stream_responses: bool = Field(
        default=True, description="Frame model output with stream start/delta/stop messages"
    )
    logging: LogConfig = Field(default_factory=LogConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> RuntimeConfig:
        """Load runtime configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml_string(cls, yaml_str: str) -> RuntimeConfig:
        """Load runtime configuration from a YAML string."""
        data = yaml.safe_load(yaml_str)
        return cls.model_validate(data or {})


def load_config(path: Path | None = None) -> RuntimeConfig:
    """Load a RuntimeConfig, returning defaults when no path is given.

    Raises:
        ConfigurationError: If the file is missing, unparseable, or invalid.
    """
    if path is None:
        return RuntimeConfig()
    try:
        return RuntimeConfig.from_yaml(path)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse {path}: {e}") from e
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e


__all__ = ["LogConfig", "RuntimeConfig", "load_config"]
