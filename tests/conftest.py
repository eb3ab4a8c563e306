"""Pytest fixtures for Cadence tests."""

from __future__ import annotations

import logging
from collections.abc import Generator

import pytest
import structlog

from cadence.execution.retry_engine import RetryCategory
from cadence.protocol.emitter import RunMeta, RuntimeEmitter
from tests.helpers import MessageRecorder


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset structlog, the root logger and CLI logging options around each test."""
    from cadence.cli import helpers as cli_helpers

    cli_helpers.reset_logging_state()
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    original_level = root_logger.level
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    cli_helpers.reset_logging_state()
    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(original_level)


@pytest.fixture
def recorder() -> MessageRecorder:
    return MessageRecorder()


@pytest.fixture
def run_meta() -> RunMeta:
    return RunMeta(run_id="run-1", session_id="session-1", turn_id="turn-1")


@pytest.fixture
def emitter(run_meta: RunMeta, recorder: MessageRecorder) -> RuntimeEmitter:
    clock = iter(range(1_700_000_000_000, 1_700_000_100_000))
    return RuntimeEmitter(run_meta, recorder, clock=lambda: next(clock))


@pytest.fixture
def zero_backoff():
    """Backoff that never sleeps, for engine and driver tests."""

    def backoff(attempt: int, category: RetryCategory) -> float:
        return 0.0

    return backoff

