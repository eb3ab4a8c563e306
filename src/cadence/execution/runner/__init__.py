"""Reference run driver.

RunDriver composes the retry engine, plan tracker and emitter around the
model and tool capabilities defined in ``models``.
"""

from .driver import DriverFactory, RunDriver
from .models import (
    ModelCaller,
    ModelDelta,
    ModelRequest,
    ModelResult,
    RunOutcome,
    Summarizer,
    ToolExecutor,
)

__all__ = [
    "DriverFactory",
    "ModelCaller",
    "ModelDelta",
    "ModelRequest",
    "ModelResult",
    "RunDriver",
    "RunOutcome",
    "Summarizer",
    "ToolExecutor",
]
