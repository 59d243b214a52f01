"""
Exponential backoff with jitter.

The wait before retry `n` is drawn uniformly from
`interval_n * (1 - jitter) .. interval_n * (1 + jitter)`, where
`interval_n = min(max_delay, initial_delay * multiplier**n)`.
Jitter spreads out retries from concurrent scrapes hitting the same upstream fault.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from tflcycles_exporter.config.settings import RetrySettings


@dataclass
class ExponentialBackoff:
    """Stateful delay generator; create one per fetch operation."""

    initial_delay_seconds: float = 0.5
    multiplier: float = 1.5
    max_delay_seconds: float = 60.0
    jitter: float = 0.5
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be within [0, 1]")
        self._interval = min(float(self.max_delay_seconds), float(self.initial_delay_seconds))

    @classmethod
    def from_settings(cls, retry: RetrySettings) -> "ExponentialBackoff":
        return cls(
            initial_delay_seconds=retry.initial_delay_seconds,
            multiplier=retry.multiplier,
            max_delay_seconds=retry.max_delay_seconds,
            jitter=retry.jitter,
        )

    def next_wait(self) -> float:
        """Return the next delay in seconds and advance the interval."""
        delta = self.jitter * self._interval
        wait = self.rng.uniform(self._interval - delta, self._interval + delta)
        self._interval = min(float(self.max_delay_seconds), self._interval * self.multiplier)
        return max(0.0, wait)
