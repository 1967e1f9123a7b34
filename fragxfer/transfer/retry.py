"""
Retry Policy and Deadlines

The backoff schedule is a pure function of the attempt number so it can be
tested without sleeping. Deadlines are absolute points on the event loop
clock; an attempt's deadline is the earlier of its own budget and the
budget left for the whole operation.
"""

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Callable, Optional

# Backoff cap: 30 seconds
MAX_BACKOFF = 30.0


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff orchestration.

    Attempt 1 never waits; attempt k > 1 waits min(base * 2^(k-2), cap).
    With the defaults that is 0, 1, 2, 4, 8, 16, 30, 30, ... seconds.
    """
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = MAX_BACKOFF

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError(f"attempts must be >= 1, got {self.attempts}")

    @classmethod
    def from_max_retries(cls, max_retries: int, **kwargs) -> 'RetryPolicy':
        """A policy making exactly max_retries attempts (at least one)."""
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        return cls(attempts=max(1, max_retries), **kwargs)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before the given 1-indexed attempt."""
        if attempt <= 1:
            return 0.0
        return min(self.base_delay * math.pow(2, attempt - 2), self.max_delay)

    def schedule(self):
        """Delays before every attempt, in order."""
        return [self.delay_for(k) for k in range(1, self.attempts + 1)]


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of one transfer attempt."""
    attempt: int
    delay: float
    result: Any = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class Deadline:
    """
    An absolute deadline on a clock (the running loop's by default).

    A Deadline with no budget never expires.
    """

    def __init__(self, expires_at: Optional[float],
                 clock: Optional[Callable[[], float]] = None):
        self.expires_at = expires_at
        self._clock = clock or (lambda: asyncio.get_running_loop().time())

    @classmethod
    def after(cls, seconds: Optional[float],
              clock: Optional[Callable[[], float]] = None) -> 'Deadline':
        """A deadline `seconds` from now (None = unbounded)."""
        deadline = cls(None, clock)
        if seconds is not None:
            deadline.expires_at = deadline.now() + seconds
        return deadline

    def now(self) -> float:
        return self._clock()

    @property
    def bounded(self) -> bool:
        return self.expires_at is not None

    def remaining(self) -> Optional[float]:
        """Seconds left, floored at zero (None = unbounded)."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self.now())

    def expired(self) -> bool:
        return self.expires_at is not None and self.now() >= self.expires_at

    def child(self, seconds: Optional[float]) -> 'Deadline':
        """The earlier of this deadline and `seconds` from now."""
        if seconds is None:
            return Deadline(self.expires_at, self._clock)
        candidate = self.now() + seconds
        if self.expires_at is not None:
            candidate = min(candidate, self.expires_at)
        return Deadline(candidate, self._clock)

    def allows(self, seconds: float) -> bool:
        """Whether `seconds` from now is still before the deadline."""
        remaining = self.remaining()
        return remaining is None or seconds < remaining

    def __repr__(self) -> str:
        return f"Deadline(remaining={self.remaining()})"
