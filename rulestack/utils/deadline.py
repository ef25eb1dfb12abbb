"""Deadlines for bounding network and subprocess work."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from rulestack.errors import Timeout

DEFAULT_TIMEOUT = 30.0


@dataclass
class Deadline:
    """An absolute point in (monotonic) time that an operation must finish by.

    A single deadline is created per top-level operation and handed down to
    every step, so the steps share one budget instead of each getting a
    fresh timeout.
    """

    seconds: float | None = DEFAULT_TIMEOUT
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    _expires_at: float | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.seconds is not None:
            self._expires_at = self.clock() + self.seconds

    @classmethod
    def none(cls) -> "Deadline":
        """A deadline that never expires."""
        return cls(seconds=None)

    def remaining(self) -> float | None:
        """Seconds left, clamped at zero. ``None`` means unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self.clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, operation: str = "operation", **context) -> None:
        """Raise ``Timeout`` if the deadline has passed."""
        if self.expired:
            raise Timeout(f"{operation} exceeded its deadline of {self.seconds:g}s", **context)

    def timeout_for(self, cap: float | None = None) -> float | None:
        """Timeout to pass to a single call: the smaller of ``cap`` and what is left."""
        remaining = self.remaining()
        if remaining is None:
            return cap
        if cap is None:
            return remaining
        return min(cap, remaining)
