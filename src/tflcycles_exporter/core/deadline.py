"""
Per-scrape fetch context.

A `FetchContext` is created for each inbound scrape and handed to the BikePoint client.
It carries:
- an optional deadline, as a `time.monotonic()` value,
- a cancellation flag, set by the HTTP layer when the scraper disconnects.

All waiting inside the client goes through `FetchContext.wait()` so that both the
deadline and cancellation interrupt backoff sleeps promptly.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field


@dataclass
class FetchContext:
    """Deadline + cancellation signal governing one fetch operation."""

    deadline: float | None = None
    _cancelled: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    @classmethod
    def with_timeout(cls, seconds: float) -> "FetchContext":
        return cls(deadline=time.monotonic() + max(0.0, float(seconds)))

    def remaining(self) -> float | None:
        """Seconds left before the deadline (never negative), or None if unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def done(self) -> bool:
        return self.cancelled or self.expired

    def reason(self) -> str | None:
        if self.cancelled:
            return "cancelled"
        if self.expired:
            return "deadline exceeded"
        return None

    def attempt_timeout(self, limit: float) -> float:
        """Return the smaller of `limit` and the remaining budget."""
        remaining = self.remaining()
        if remaining is None:
            return float(limit)
        return min(float(limit), remaining)

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`, waking early on cancellation or deadline expiry.

        Returns True if the context is done when the wait ends.
        """
        seconds = max(0.0, float(seconds))
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self._cancelled.wait(seconds)
        return self.done()
