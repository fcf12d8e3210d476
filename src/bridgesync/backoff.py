"""Linear backoff policy shared by retries, the periodic checker and streams."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BASE_DELAY = 3.0
DEFAULT_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class BackoffPolicy:
    """``delay(attempt) = base_delay * attempt`` for attempts 1..max_attempts.

    ``jitter`` is a fraction of the computed delay added on top (never
    subtracted), so the expected delay stays non-decreasing.
    """

    base_delay: float = DEFAULT_BASE_DELAY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.jitter < 0:
            raise ValueError("jitter must be >= 0")

    def delay(self, attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        return self.base_delay * attempt

    def jittered(self, attempt: int, rng: random.Random | None = None) -> float:
        base = self.delay(attempt)
        if not self.jitter or not base:
            return base
        rng = rng or random
        return base + rng.uniform(0.0, self.jitter * base)

    def delays(self) -> Iterator[float]:
        """Iterate the un-jittered delay sequence up to ``max_attempts``."""
        for attempt in range(1, self.max_attempts + 1):
            yield self.delay(attempt)


@dataclass
class BackoffState:
    policy: BackoffPolicy = field(default_factory=BackoffPolicy)
    attempt: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.policy.max_attempts

    def next_delay(self, rng: random.Random | None = None) -> float | None:
        """Advance the attempt counter and return its delay, or None when exhausted."""
        if self.exhausted:
            return None
        self.attempt += 1
        return self.policy.jittered(self.attempt, rng)

    def reset(self) -> None:
        self.attempt = 0


async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    *,
    should_retry: Callable[[BaseException], bool],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    describe: str = "operation",
) -> T:
    """Run ``func`` and retry it while ``should_retry(exc)`` holds.

    ``policy.max_attempts`` bounds the number of *retries*; the first call is
    not counted. The last exception is re-raised once the policy is exhausted.
    """
    state = BackoffState(policy)
    while True:
        try:
            return await func()
        except Exception as exc:
            if not should_retry(exc):
                raise
            delay = state.next_delay()
            if delay is None:
                log.warning("%s failed after %d retries: %s", describe, state.attempt, exc)
                raise
            log.debug(
                "Retry attempt %d/%d for %s in %.1fs: %s",
                state.attempt, policy.max_attempts, describe, delay, exc,
            )
            await sleep(delay)
