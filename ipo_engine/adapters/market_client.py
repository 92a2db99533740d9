from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol

import httpx

from ipo_engine.config import settings
from ipo_engine.core.retry import RetryPolicy, with_retry
from ipo_engine.errors import ErrorCode, UpstreamError
from ipo_engine.utils.ids import sha256_hex
from ipo_engine.utils.time import now_ist

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    results: dict[str, dict[str, Any]] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


class MarketDataClient(Protocol):
    async def fetch_offering_master(self) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def fetch_category_data(self, symbol: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def fetch_demand_data(self, symbol: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def batch_fetch_market_data(self, symbols: list[str], max_concurrent: int = 3,
                                      policy: RetryPolicy | None = None) -> BatchResult:
        raise NotImplementedError

    async def fetch_premium_quote(self, symbol: str, source: str) -> dict[str, Any] | None:
        raise NotImplementedError

    async def health_check(self) -> dict[str, Any]:
        raise NotImplementedError

    async def aclose(self) -> None:
        raise NotImplementedError


async def bounded_batch_fetch(client: MarketDataClient, symbols: list[str], max_concurrent: int,
                              policy: RetryPolicy | None = None) -> BatchResult:
    """Fetch categories + demand per symbol with at most ``max_concurrent`` in flight.

    Each call is retried under ``policy``. One symbol failing never affects
    the others; its last error lands in ``errors``.
    """
    out = BatchResult()
    policy = policy or RetryPolicy.from_settings()
    sem = asyncio.Semaphore(max(1, int(max_concurrent)))

    async def _one(sym: str) -> None:
        async with sem:
            try:
                categories = await with_retry(lambda: client.fetch_category_data(sym), f"fetch_category_data:{sym}", policy=policy)
                demand = await with_retry(lambda: client.fetch_demand_data(sym), f"fetch_demand_data:{sym}", policy=policy)
                out.results[sym] = {"categories": categories, "demand": demand}
            except Exception as e:
                out.errors[sym] = str(e)
                logger.warning("batch fetch failed symbol=%s: %s", sym, e)

    await asyncio.gather(*(_one(s) for s in dict.fromkeys(symbols)))
    return out


def _unwrap(raw: Any) -> list[dict[str, Any]]:
    # Upstream wraps lists as {"data": [...]} on some endpoints and returns bare lists on others.
    if isinstance(raw, list):
        return [x for x in raw if isinstance(x, dict)]
    if isinstance(raw, dict):
        for k in ("data", "result", "items"):
            v = raw.get(k)
            if isinstance(v, list):
                return [x for x in v if isinstance(x, dict)]
    return []


class HTTPMarketDataClient:
    """Exchange-style JSON API over httpx.

    Endpoint paths are relative to MARKET_API_BASE_URL. 429/5xx and transport
    errors raise UpstreamError (retryable); other 4xx raise UpstreamError too
    but carry the status so callers can tell them apart.
    """

    PATH_MASTER = "/api/ipo-current-issue"
    PATH_UPCOMING = "/api/all-upcoming-issues"
    PATH_CATEGORY = "/api/ipo-active-category"
    PATH_DEMAND = "/api/ipo-bid-details"
    PATH_PREMIUM = "/api/ipo-premium"

    def __init__(self, base_url: str | None = None, timeout_sec: float | None = None,
                 transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._base_url = (base_url or settings.MARKET_API_BASE_URL).rstrip("/")
        self._timeout = float(timeout_sec if timeout_sec is not None else settings.MARKET_API_TIMEOUT_SEC)
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=transport,
            headers={"Accept": "application/json", "User-Agent": "ipo-engine/1.0"},
        )
        self.requests = 0
        self.failures = 0

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        self.requests += 1
        try:
            r = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            self.failures += 1
            raise UpstreamError(f"timeout GET {path}: {e}", code=ErrorCode.TIMEOUT) from e
        except httpx.HTTPError as e:
            self.failures += 1
            raise UpstreamError(f"transport error GET {path}: {e}") from e

        if r.status_code >= 400:
            self.failures += 1
            raise UpstreamError(f"GET {path} -> HTTP {r.status_code}", status_code=r.status_code)
        try:
            return r.json() if r.content else None
        except ValueError as e:
            self.failures += 1
            raise UpstreamError(f"GET {path}: invalid JSON") from e

    async def fetch_offering_master(self) -> list[dict[str, Any]]:
        current = _unwrap(await self._get(self.PATH_MASTER))
        upcoming = _unwrap(await self._get(self.PATH_UPCOMING))
        seen: dict[str, dict[str, Any]] = {}
        for row in current + upcoming:
            sym = str(row.get("symbol") or "").strip().upper()
            if sym and sym not in seen:
                seen[sym] = row
            elif not sym:
                # keep symbol-less rows so validation records them
                seen[f"__invalid_{len(seen)}"] = row
        return list(seen.values())

    async def fetch_category_data(self, symbol: str) -> list[dict[str, Any]]:
        return _unwrap(await self._get(self.PATH_CATEGORY, {"symbol": symbol}))

    async def fetch_demand_data(self, symbol: str) -> list[dict[str, Any]]:
        return _unwrap(await self._get(self.PATH_DEMAND, {"symbol": symbol}))

    async def batch_fetch_market_data(self, symbols: list[str], max_concurrent: int = 3,
                                      policy: RetryPolicy | None = None) -> BatchResult:
        return await bounded_batch_fetch(self, symbols, max_concurrent, policy=policy)

    async def fetch_premium_quote(self, symbol: str, source: str) -> dict[str, Any] | None:
        raw = await self._get(self.PATH_PREMIUM, {"symbol": symbol, "source": source})
        if isinstance(raw, dict) and isinstance(raw.get("data"), dict):
            raw = raw["data"]
        return raw if isinstance(raw, dict) and raw.get("value") is not None else None

    async def health_check(self) -> dict[str, Any]:
        t0 = time.monotonic()
        try:
            await self._get(self.PATH_MASTER)
        except UpstreamError as e:
            return {"status": "unhealthy", "error": e.message}
        return {"status": "healthy", "latency_ms": int((time.monotonic() - t0) * 1000)}

    async def aclose(self) -> None:
        await self._client.aclose()


@dataclass
class MockMarketDataClient:
    """Deterministic-ish mock source for local/offline runs.

    Offerings, category ratios and premium quotes are derived from a stable
    per-symbol hash so repeated master fetches return identical records;
    category ratios grow with wall-clock time while an offering is open.
    """

    seed: int = 42
    symbols: tuple[str, ...] = ("ALPHAIPO", "BETAIPO", "GAMMAIPO", "DELTAIPO", "OMEGAIPO")

    def _rng(self, *parts: Any) -> random.Random:
        h = sha256_hex("|".join(str(p) for p in (*parts, self.seed)).encode("utf-8"))
        return random.Random(int(h[:8], 16))

    def _offering(self, idx: int, symbol: str) -> dict[str, Any]:
        rng = self._rng("master", symbol)
        today = now_ist().replace(hour=10, minute=0, second=0, microsecond=0)
        # spread lifecycle: closed, open, open, upcoming, upcoming
        start = today + timedelta(days=(idx - 1) * 2 - 2)
        lo = float(rng.randint(80, 900))
        hi = round(lo * (1 + rng.uniform(0.03, 0.08)))
        return {
            "symbol": symbol,
            "name": f"{symbol.title()} Limited",
            "openDate": start.date().isoformat(),
            "closeDate": (start + timedelta(days=2)).date().isoformat(),
            "listingDate": (start + timedelta(days=6)).date().isoformat(),
            "minPrice": lo,
            "maxPrice": float(hi),
            "lotSize": int(max(1, 15000 // hi)),
            "issueSize": int(rng.randint(200, 8000) * 10_000_000),
            "issueType": "EQ",
        }

    async def fetch_offering_master(self) -> list[dict[str, Any]]:
        return [self._offering(i, s) for i, s in enumerate(self.symbols)]

    async def fetch_category_data(self, symbol: str) -> list[dict[str, Any]]:
        rng = self._rng("categories", symbol)
        # hours since the start of the day drive ratio growth
        hours = now_ist().hour + now_ist().minute / 60.0
        base = rng.uniform(0.2, 3.0)
        rows = []
        for code, mult in (("QIB", 1.6), ("NII", 1.2), ("IND", 0.9), ("EMP", 0.5)):
            ratio = round(base * mult * (1 + hours / 12.0), 2)
            offered = rng.randint(1_000_000, 20_000_000)
            rows.append({
                "category": code,
                "noOfSharesOffered": offered,
                "noOfSharesBid": int(offered * ratio),
                "bidCount": int(offered * ratio / 100),
                "subscriptionRatio": ratio,
            })
        return rows

    async def fetch_demand_data(self, symbol: str) -> list[dict[str, Any]]:
        rng = self._rng("demand", symbol)
        offering = next((self._offering(i, s) for i, s in enumerate(self.symbols) if s == symbol), None)
        hi = float(offering["maxPrice"]) if offering else 100.0
        rows = [{"price": "Cut-off", "absoluteQuantity": rng.randint(10**5, 10**7), "absoluteBidCount": rng.randint(10**3, 10**5)}]
        for step in range(3):
            rows.append({
                "price": round(hi - step, 2),
                "absoluteQuantity": rng.randint(10**4, 10**6),
                "absoluteBidCount": rng.randint(10**2, 10**4),
            })
        return rows

    async def batch_fetch_market_data(self, symbols: list[str], max_concurrent: int = 3,
                                      policy: RetryPolicy | None = None) -> BatchResult:
        return await bounded_batch_fetch(self, symbols, max_concurrent, policy=policy)

    async def fetch_premium_quote(self, symbol: str, source: str) -> dict[str, Any] | None:
        rng = self._rng("premium", symbol, source, now_ist().strftime("%Y%m%d%H%M"))
        base = self._rng("premium", symbol).randint(-50, 150)
        value = max(0, base + rng.randint(-7, 7))
        return {
            "value": float(value),
            "volume": rng.randint(500, 2500),
            "bidPrice": float(value - rng.randint(0, 4)),
            "askPrice": float(value + rng.randint(0, 4)),
        }

    async def health_check(self) -> dict[str, Any]:
        return {"status": "healthy", "provider": "MOCK"}

    async def aclose(self) -> None:
        return None


def get_market_client() -> MarketDataClient:
    if (settings.MARKET_PROVIDER or "").upper() == "HTTP":
        return HTTPMarketDataClient()
    return MockMarketDataClient()
