from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, Union

from ipo_engine.config import settings
from ipo_engine.errors import RetryExhaustedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    jitter_ms: int = 1000
    exponential: bool = True

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=int(settings.RETRY_MAX_ATTEMPTS),
            base_delay_ms=int(settings.RETRY_BASE_DELAY_MS),
            max_delay_ms=int(settings.RETRY_MAX_DELAY_MS),
            jitter_ms=int(settings.RETRY_JITTER_MS),
        )

    def backoff_ms(self, attempt: int) -> int:
        """Deterministic part of the delay after ``attempt`` (1-based) failed."""
        if not self.exponential:
            return int(min(self.base_delay_ms, self.max_delay_ms))
        ms = self.base_delay_ms * (2 ** max(0, attempt - 1))
        return int(min(self.max_delay_ms, ms))

    def delay_bounds_ms(self) -> tuple[int, int]:
        """(min, max) total sleep across a fully failing run."""
        lo = sum(self.backoff_ms(a) for a in range(1, self.max_retries))
        return lo, lo + self.jitter_ms * max(0, self.max_retries - 1)


def calc_backoff(policy: RetryPolicy, attempt: int, rng: Optional[random.Random] = None) -> float:
    """Delay in seconds: min(base * 2^(attempt-1), cap) + uniform jitter."""
    jitter = (rng or random).uniform(0, policy.jitter_ms) if policy.jitter_ms > 0 else 0.0
    return (policy.backoff_ms(attempt) + jitter) / 1000.0


async def with_retry(
    operation: Callable[[], Awaitable[Any]],
    name: str,
    policy: Optional[RetryPolicy] = None,
    exceptions: Union[Type[BaseException], Tuple[Type[BaseException], ...]] = Exception,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> Any:
    """Await ``operation`` up to ``policy.max_retries`` times.

    No sleep follows the final attempt. When every attempt fails the last
    error surfaces wrapped in RetryExhaustedError (and chained as __cause__).
    """
    policy = policy or RetryPolicy.from_settings()
    tries = max(1, int(policy.max_retries))
    last_exc: Optional[BaseException] = None

    for attempt in range(1, tries + 1):
        t0 = time.monotonic()
        try:
            return await operation()
        except exceptions as e:
            last_exc = e
            elapsed_ms = int((time.monotonic() - t0) * 1000)
            if attempt < tries:
                delay = calc_backoff(policy, attempt, rng)
                logger.warning(
                    "[retry] %s failed (attempt %d/%d, %dms): %s. Retrying in %.2fs",
                    name, attempt, tries, elapsed_ms, e, delay,
                )
                await sleep(delay)
            else:
                logger.warning("[retry] %s failed (attempt %d/%d, %dms): %s", name, attempt, tries, elapsed_ms, e)

    assert last_exc is not None
    raise RetryExhaustedError(name, tries, last_exc) from last_exc
