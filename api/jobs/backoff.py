"""Retry delay computation for failed export jobs."""
from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional


def backoff_delay(
    attempt: int,
    *,
    base: float,
    cap: float,
    jitter: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """delay = min(base * 2**(attempt-1), cap) + rand() * jitter, in seconds.

    *attempt* is the attempt that just failed (1 for the first claim).
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    # Past ~2**64 the exponential only matters as "above the cap".
    exponent = min(attempt - 1, 64)
    return min(base * (2 ** exponent), cap) + rand() * jitter


@dataclass(frozen=True)
class BackoffPolicy:
    """Base / cap / jitter bundle; defaults track the live engine config."""

    base: float
    cap: float
    jitter: float

    @classmethod
    def from_config(cls) -> "BackoffPolicy":
        import audit_export.config as cfg

        return cls(
            base=float(cfg.BACKOFF_BASE_SECONDS),
            cap=float(cfg.BACKOFF_CAP_SECONDS),
            jitter=float(cfg.BACKOFF_JITTER_SECONDS),
        )

    @property
    def max_delay(self) -> float:
        return self.cap + self.jitter

    def delay(self, attempt: int, rand: Optional[Callable[[], float]] = None) -> timedelta:
        seconds = backoff_delay(
            attempt,
            base=self.base,
            cap=self.cap,
            jitter=self.jitter,
            rand=rand or random.random,
        )
        return timedelta(seconds=seconds)
