"""Bounded resource use for the registry server.

- ``ResourcePool``: caps concurrent access to the package store; callers
  that cannot get a slot before their deadline fail instead of queueing.
- ``retry_with_backoff``: bounded exponential backoff with jitter for
  transient write conflicts.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TypeVar

from rulestack.utils.deadline import Deadline

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PoolExhausted(Exception):
    """No slot became free before the deadline."""


class TransientWriteConflict(Exception):
    """A write lost a race with a concurrent writer and may be retried."""


class ResourcePool:
    """A fixed number of slots guarding the package store."""

    def __init__(self, size: int = 8):
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.size = size
        self._slots = threading.BoundedSemaphore(size)

    @contextmanager
    def acquire(self, deadline: Deadline) -> Iterator[None]:
        timeout = deadline.remaining()
        if not self._slots.acquire(timeout=timeout if timeout is not None else None):
            raise PoolExhausted(f"no store connection available within {deadline.seconds:g}s")
        try:
            yield
        finally:
            self._slots.release()


@dataclass
class BackoffConfig:
    base_delay: float = 0.05
    max_delay: float = 2.0
    multiplier: float = 2.0
    jitter_factor: float = 0.5  # 0.5 = +/-50%
    max_retries: int = 3


def compute_backoff_delay(config: BackoffConfig, attempt: int, rng: random.Random | None = None) -> float:
    """Delay before retry number ``attempt`` (1-based), jittered and capped."""
    if attempt <= 0:
        return 0.0
    delay = config.base_delay * (config.multiplier ** (attempt - 1))
    jitter = (rng or random).uniform(1.0 - config.jitter_factor, 1.0 + config.jitter_factor)
    return min(delay * jitter, config.max_delay)


def retry_with_backoff(
    operation: Callable[[], T],
    deadline: Deadline,
    config: BackoffConfig | None = None,
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
) -> T:
    """Run ``operation``, retrying ``TransientWriteConflict`` a bounded number of times.

    The last conflict is re-raised once retries or the deadline run out.
    """
    config = config or BackoffConfig()
    attempt = 0
    while True:
        try:
            return operation()
        except TransientWriteConflict:
            attempt += 1
            if attempt > config.max_retries:
                raise
            delay = compute_backoff_delay(config, attempt, rng)
            remaining = deadline.remaining()
            if remaining is not None and delay >= remaining:
                raise
            logger.debug("write conflict; retry %d/%d in %.3fs", attempt, config.max_retries, delay)
            sleep(delay)
