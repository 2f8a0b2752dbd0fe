"""
Retry delay policies.

Two distinct retry loops use these: job-level retries (a failed attempt is
re-surfaced after ``BackoffPolicy.delay``) and store-call retries (a store
operation that raised StorageError is repeated by the calling worker or
promoter via ``call_with_store_retry``).
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TypeVar

from jobengine.config.logging import get_logger
from jobengine.config.settings import Settings
from jobengine.core.exceptions import StorageError

logger = get_logger(__name__)

R = TypeVar("R")


@dataclass(frozen=True)
class BackoffPolicy:
    """
    delay(attempt) = min(base * factor ** attempt, max_delay), jittered.

    Jitter perturbs the delay by up to ``jitter`` times its value in either
    direction; the result never exceeds ``max_delay_s`` or drops below zero.
    """

    base_delay_s: float = 1.0
    factor: float = 2.0
    max_delay_s: float = 300.0
    jitter: float = 0.25
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self):
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("Backoff delays must be non-negative")
        if self.factor < 1:
            raise ValueError("Backoff factor must be >= 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("Backoff jitter must be in [0, 1)")

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            base_delay_s=settings.job_backoff_base_ms / 1000,
            factor=settings.job_backoff_factor,
            max_delay_s=settings.job_max_backoff_s,
            jitter=settings.job_backoff_jitter,
        )

    def raw_delay(self, attempt: int) -> float:
        """Un-jittered delay in seconds for the given zero-based retry number."""
        try:
            delay = self.base_delay_s * (self.factor ** max(0, attempt))
        except OverflowError:
            return self.max_delay_s
        return min(delay, self.max_delay_s)

    def delay(self, attempt: int) -> timedelta:
        delay = self.raw_delay(attempt)
        if self.jitter:
            delay += delay * self.jitter * (2 * self.rng.random() - 1)
        return timedelta(seconds=min(self.max_delay_s, max(0.0, delay)))


async def call_with_store_retry(
    operation: Callable[[], Awaitable[R]],
    *,
    attempts: int = 3,
    base_delay_s: float = 0.05,
    description: str = "store call",
) -> R:
    """
    Run a store operation, retrying only on StorageError.

    The final StorageError propagates once attempts are exhausted.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except StorageError as e:
            if attempt >= attempts:
                logger.error(
                    "Store call failed", operation=description, attempts=attempt, error=e.message
                )
                raise
            delay = base_delay_s * (2 ** (attempt - 1))
            logger.warning(
                "Store call failed, retrying",
                operation=description,
                attempt=attempt,
                delay_s=delay,
                error=e.message,
            )
            await asyncio.sleep(delay)
