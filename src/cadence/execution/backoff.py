"""Exponential backoff with a cap and symmetric jitter.

Example usage:
    from cadence.execution.backoff import create_exponential_backoff

    backoff = create_exponential_backoff(base_ms=500, max_ms=8000, jitter=0.2)
    delay_ms = backoff(3)  # ~2000ms, +/- 20%
"""

from __future__ import annotations

import math
import random
from collections.abc import Callable
from dataclasses import dataclass, field

from cadence.core.config import BackoffConfig
from cadence.core.constants import BACKOFF_BASE_MS, BACKOFF_JITTER, BACKOFF_MAX_MS

Rng = Callable[[], float]


def _finite_or(value: float | None, default: float) -> float:
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _round_half_up(value: float) -> int:
    # round() is banker's rounding; delays round .5 upward
    return math.floor(value + 0.5)


def _safe_attempt(attempt: float) -> int:
    try:
        number = float(attempt)
    except (TypeError, ValueError):
        return 1
    if not math.isfinite(number):
        return 1
    return max(1, math.floor(number))


@dataclass(frozen=True)
class ExponentialBackoff:
    """Maps an attempt number (1-based) to a delay in milliseconds.

    ``delay(n) = round(min(max_ms, base_ms * 2**(n-1)) * (1 + (2r - 1) * jitter))``
    with ``r`` drawn once from ``rng``. With ``jitter <= 0`` the rng is
    never consulted and delays are exact, so they are non-decreasing up to
    the cap. Attempts are floored and clamped to at least 1.
    """

    base_ms: float = BACKOFF_BASE_MS
    max_ms: float = BACKOFF_MAX_MS
    jitter: float = BACKOFF_JITTER
    rng: Rng = field(default=random.random, compare=False)

    def raw_delay(self, attempt: float) -> float:
        """Capped exponential delay before jitter."""
        n = _safe_attempt(attempt)
        # Cap the exponent too; 2**n overflows float for very large attempts
        exponent = min(n - 1, 1024)
        try:
            grown = self.base_ms * 2.0**exponent
        except OverflowError:
            grown = math.inf
        return min(self.max_ms, grown)

    def __call__(self, attempt: float) -> int:
        raw = self.raw_delay(attempt)
        if self.jitter <= 0:
            return _round_half_up(raw)
        factor = 1 + (self.rng() * 2 - 1) * self.jitter
        return _round_half_up(raw * factor)

    @classmethod
    def from_config(cls, config: BackoffConfig, rng: Rng | None = None) -> ExponentialBackoff:
        return cls(
            base_ms=config.base_ms,
            max_ms=config.max_ms,
            jitter=config.jitter,
            rng=rng or random.random,
        )


def create_exponential_backoff(
    base_ms: float | None = None,
    max_ms: float | None = None,
    jitter: float | None = None,
    rng: Rng | None = None,
) -> ExponentialBackoff:
    """Build a backoff function; missing or non-finite options take defaults."""
    return ExponentialBackoff(
        base_ms=_finite_or(base_ms, BACKOFF_BASE_MS),
        max_ms=_finite_or(max_ms, BACKOFF_MAX_MS),
        jitter=_finite_or(jitter, BACKOFF_JITTER),
        rng=rng or random.random,
    )


__all__ = ["ExponentialBackoff", "Rng", "create_exponential_backoff"]
