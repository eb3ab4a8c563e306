"""CLI command implementations."""

from .replay import replay
from .validate import validate

__all__ = ["replay", "validate"]
