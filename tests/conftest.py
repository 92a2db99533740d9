"""Pytest configuration and fixtures."""

from __future__ import annotations

import copy
from collections import Counter
from datetime import timedelta
from typing import Any

import pytest

from ipo_engine.adapters.broadcast import BroadcastChannel
from ipo_engine.adapters.cache import MemoryCache
from ipo_engine.adapters.market_client import BatchResult, bounded_batch_fetch
from ipo_engine.config import Settings
from ipo_engine.core.engine import build
from ipo_engine.core.retry import RetryPolicy
from ipo_engine.core.validation import parse_offering
from ipo_engine.database.engine import SessionLocal, init_engine, init_schema_check
from ipo_engine.database.repo import Repo
from ipo_engine.errors import UpstreamError
from ipo_engine.utils.time import now_ist


def make_offering(symbol: str = "ALPHA", status: str | None = "open", open_in_days: int = -1,
                  close_in_days: int = 1, **overrides: Any) -> dict[str, Any]:
    """Raw upstream-shaped offering payload."""
    today = now_ist().replace(hour=10, minute=0, second=0, microsecond=0)
    raw = {
        "symbol": symbol,
        "name": f"{symbol.title()} Industries Limited",
        "openDate": (today + timedelta(days=open_in_days)).isoformat(),
        "closeDate": (today + timedelta(days=close_in_days)).isoformat(),
        "minPrice": 100.0,
        "maxPrice": 110.0,
        "lotSize": 130,
        "issueSize": 500 * 10_000_000,
    }
    if status is not None:
        raw["status"] = status
    raw.update(overrides)
    return raw


def category_rows(retail: float, qib: float, nib: float) -> list[dict[str, Any]]:
    return [
        {"category": "IND", "noOfSharesOffered": 1_000_000, "noOfSharesBid": int(1_000_000 * retail),
         "bidCount": 5000, "subscriptionRatio": retail},
        {"category": "QIB", "noOfSharesOffered": 2_000_000, "noOfSharesBid": int(2_000_000 * qib),
         "bidCount": 40, "subscriptionRatio": qib},
        {"category": "HNI", "noOfSharesOffered": 500_000, "noOfSharesBid": int(500_000 * nib),
         "bidCount": 300, "subscriptionRatio": nib},
    ]


class FakeMarketClient:
    """Scriptable in-memory market data source."""

    def __init__(self) -> None:
        self.offerings: list[dict[str, Any]] = []
        self.categories: dict[str, list[dict[str, Any]]] = {}
        self.demand: dict[str, list[dict[str, Any]]] = {}
        self.premiums: dict[tuple[str, str], dict[str, Any]] = {}
        self.fail_master = 0
        self.fail_symbols: set[str] = set()
        self.healthy = True
        self.calls: Counter = Counter()
        self.closed = False

    async def fetch_offering_master(self) -> list[dict[str, Any]]:
        self.calls["master"] += 1
        if self.fail_master > 0:
            self.fail_master -= 1
            raise UpstreamError("master feed unavailable", status_code=503)
        return copy.deepcopy(self.offerings)

    async def fetch_category_data(self, symbol: str) -> list[dict[str, Any]]:
        self.calls[f"categories:{symbol}"] += 1
        if symbol in self.fail_symbols:
            raise UpstreamError(f"category feed failed for {symbol}")
        return copy.deepcopy(self.categories.get(symbol, []))

    async def fetch_demand_data(self, symbol: str) -> list[dict[str, Any]]:
        self.calls[f"demand:{symbol}"] += 1
        if symbol in self.fail_symbols:
            raise UpstreamError(f"demand feed failed for {symbol}")
        return copy.deepcopy(self.demand.get(symbol, []))

    async def batch_fetch_market_data(self, symbols: list[str], max_concurrent: int = 3,
                                      policy: RetryPolicy | None = None) -> BatchResult:
        return await bounded_batch_fetch(self, symbols, max_concurrent, policy=policy)

    async def fetch_premium_quote(self, symbol: str, source: str) -> dict[str, Any] | None:
        self.calls[f"premium:{symbol}:{source}"] += 1
        q = self.premiums.get((symbol, source))
        return dict(q) if q else None

    async def health_check(self) -> dict[str, Any]:
        if self.healthy:
            return {"status": "healthy"}
        return {"status": "unhealthy", "error": "connection refused"}

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def cfg(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite:///{tmp_path / 'ipo_test.sqlite3'}",
        MARKET_PROVIDER="MOCK",
        REDIS_URL="",
        START_SYNC_ENGINE=False,
        SYNC_INITIAL_RUN=False,
        SYNC_ANALYTICS_BATCH_PAUSE_MS=0,
        PREMIUM_SOURCES="market,broker",
    )


@pytest.fixture
def session_factory(cfg: Settings):
    init_engine(cfg.DATABASE_URL)
    init_schema_check()
    return SessionLocal


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_retries=2, base_delay_ms=0, max_delay_ms=0, jitter_ms=0)


@pytest.fixture
def fake_client() -> FakeMarketClient:
    return FakeMarketClient()


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache(default_ttl=300, max_entries=1000)


@pytest.fixture
def broadcast() -> BroadcastChannel:
    """Broadcast channel; sent messages are kept in ``.recent``."""
    return BroadcastChannel(keep_recent=500)


@pytest.fixture
def handle(cfg, session_factory, fake_client, cache, broadcast, fast_retry):
    return build(
        cfg,
        client=fake_client,
        cache=cache,
        broadcast=broadcast,
        session_factory=session_factory,
        retry_policy=fast_retry,
    )


@pytest.fixture
def seed_offering(session_factory):
    """Insert a validated offering directly; returns its id."""

    def _seed(symbol: str = "ALPHA", **kwargs: Any) -> int:
        rec = parse_offering(make_offering(symbol, **kwargs))
        with session_factory() as s:
            row = Repo(s).offerings.create(rec)
            oid = int(row.id)
            s.commit()
        return oid

    return _seed


def messages(broadcast: BroadcastChannel, msg_type: str, kind: str | None = None) -> list[dict]:
    return [m for m in broadcast.recent if m["type"] == msg_type and (kind is None or m.get("kind") == kind)]
