from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ipo_engine.config import settings

logger = logging.getLogger(__name__)


@dataclass
class FailedOperation:
    name: str
    operation: Callable[[], Awaitable[Any]]
    error: str
    queued_at: float = field(default_factory=time.time)
    attempts: int = 0


@dataclass
class ReplayResult:
    recovered: int
    failed: int
    dropped: int


class FailedOperationQueue:
    """Bounded replay queue for failed job runs.

    - full queue: the oldest entry is evicted (and counted) to make room
    - each entry is replayed at most ``max_attempts`` times, then dropped
    """

    def __init__(self, max_size: int | None = None, max_attempts: int | None = None) -> None:
        self.max_size = int(max_size if max_size is not None else settings.FAILED_OPS_MAX_QUEUE)
        self.max_attempts = int(max_attempts if max_attempts is not None else settings.FAILED_OPS_MAX_ATTEMPTS)
        self._items: deque[FailedOperation] = deque()
        self.evicted = 0
        self.recovered = 0
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._items)

    def enqueue(self, name: str, operation: Callable[[], Awaitable[Any]], error: BaseException | str) -> None:
        if len(self._items) >= self.max_size:
            old = self._items.popleft()
            self.evicted += 1
            logger.warning("failed-op queue full (%d); evicted oldest: %s", self.max_size, old.name)
        self._items.append(FailedOperation(name=name, operation=operation, error=str(error)[:500]))

    async def process(self) -> ReplayResult:
        """Replay every queued entry once. Entries that fail again are re-queued."""
        if not self._items:
            return ReplayResult(0, 0, 0)

        batch = list(self._items)
        self._items.clear()
        logger.info("replaying %d failed operations", len(batch))

        recovered = failed = dropped = 0
        for item in batch:
            try:
                await item.operation()
                recovered += 1
                logger.info("recovered failed operation: %s", item.name)
            except Exception as e:
                item.attempts += 1
                item.error = str(e)[:500]
                failed += 1
                if item.attempts < self.max_attempts:
                    self.enqueue(item.name, item.operation, item.error)
                    self._items[-1].attempts = item.attempts
                    self._items[-1].queued_at = item.queued_at
                else:
                    dropped += 1
                    logger.warning("permanently failed operation: %s (%s)", item.name, item.error)

        self.recovered += recovered
        self.dropped += dropped
        return ReplayResult(recovered=recovered, failed=failed, dropped=dropped)

    def prune_older_than(self, max_age_sec: float | None = None, now: float | None = None) -> int:
        max_age = float(max_age_sec if max_age_sec is not None else settings.FAILED_OPS_MAX_AGE_SEC)
        now = time.time() if now is None else now
        keep = deque(x for x in self._items if now - x.queued_at <= max_age)
        removed = len(self._items) - len(keep)
        self._items = keep
        return removed

    def snapshot(self) -> list[dict]:
        return [
            {"name": x.name, "error": x.error, "attempts": x.attempts, "queued_at": x.queued_at}
            for x in self._items
        ]

    def stats(self) -> dict:
        return {
            "depth": len(self._items),
            "max_size": self.max_size,
            "evicted": self.evicted,
            "recovered": self.recovered,
            "dropped": self.dropped,
        }
