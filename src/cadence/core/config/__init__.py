"""Configuration models for Cadence.

All models are re-exported here so ``from cadence.core.config import ...``
works regardless of which submodule defines them.
"""

from cadence.core.config.execution import (
    BackoffConfig,
    CompactionConfig,
    PlanConfig,
    RetryConfig,
    coerce_retry_limit,
)
from cadence.core.config.runtime import LogConfig, RuntimeConfig, load_config

__all__ = [
    "BackoffConfig",
    "CompactionConfig",
    "LogConfig",
    "PlanConfig",
    "RetryConfig",
    "RuntimeConfig",
    "coerce_retry_limit",
    "load_config",
]
