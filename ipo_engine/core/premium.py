"""Grey-market premium (GMP) aggregation across quote sources."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Sequence

from ipo_engine.core.records import PremiumQuoteRecord
from ipo_engine.core.retry import RetryPolicy, with_retry
from ipo_engine.core.stats import mean
from ipo_engine.utils.time import now_ist, parse_dt

logger = logging.getLogger(__name__)

SOURCE_RELIABILITY = {
    "market": 0.9,
    "broker": 0.8,
    "portal": 0.7,
    "aggregator": 0.85,
}
DEFAULT_RELIABILITY = 0.6

# percent move needed before a change counts as up/down
CHANGE_THRESHOLD_PCT = 2.0


def source_reliability(source: str) -> float:
    return SOURCE_RELIABILITY.get((source or "").strip().lower(), DEFAULT_RELIABILITY)


def _num(v: Any) -> float | None:
    if v is None or isinstance(v, bool):
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def parse_quote(source: str, raw: dict[str, Any], max_price: float, ts: datetime | None = None) -> PremiumQuoteRecord | None:
    value = _num(raw.get("value"))
    if value is None:
        return None
    pct = _num(raw.get("percentage"))
    if pct is None:
        pct = value / max_price * 100.0 if max_price > 0 else 0.0
    return PremiumQuoteRecord(
        source=source,
        value=value,
        percentage=pct,
        volume=int(_num(raw.get("volume")) or 0),
        bid_price=_num(raw.get("bid_price", raw.get("bidPrice"))),
        ask_price=_num(raw.get("ask_price", raw.get("askPrice"))),
        reliability=source_reliability(source),
        timestamp=parse_dt(raw.get("timestamp")) or ts or now_ist(),
    )


def weighted_premium(quotes: Sequence[PremiumQuoteRecord]) -> dict[str, Any] | None:
    """Reliability-weighted GMP; None when no source answered."""
    if not quotes:
        return None
    total_w = sum(q.reliability for q in quotes)
    if total_w <= 0:
        return None
    bids = [q.bid_price for q in quotes if q.bid_price is not None]
    asks = [q.ask_price for q in quotes if q.ask_price is not None]
    return {
        "value": round(sum(q.value * q.reliability for q in quotes) / total_w, 2),
        "percentage": round(sum(q.percentage * q.reliability for q in quotes) / total_w, 2),
        "volume": sum(q.volume for q in quotes),
        "bid_price": round(mean(bids), 2) if bids else None,
        "ask_price": round(mean(asks), 2) if asks else None,
        "reliability": round(mean([q.reliability for q in quotes]), 2),
        "source": "aggregated",
        "sources": [q.source for q in quotes],
        "timestamp": max(q.timestamp for q in quotes),
    }


def premium_change(current: float, previous: float | None) -> dict[str, Any]:
    if previous is None:
        return {"absolute": 0.0, "percentage": 0.0, "direction": "stable"}
    absolute = current - previous
    pct = absolute / previous * 100.0 if previous > 0 else 0.0
    if pct > CHANGE_THRESHOLD_PCT:
        direction = "up"
    elif pct < -CHANGE_THRESHOLD_PCT:
        direction = "down"
    else:
        direction = "stable"
    return {"absolute": round(absolute, 2), "percentage": round(pct, 2), "direction": direction}


def premium_trend(values_newest_first: Sequence[float]) -> str:
    """Coarse direction of the last few quotes: bullish / bearish / stable."""
    if len(values_newest_first) < 2:
        return "stable"
    latest, oldest = values_newest_first[0], values_newest_first[-1]
    change = latest - oldest
    if abs(change) < 1:
        return "stable"
    return "bullish" if change > 0 else "bearish"


async def fetch_quotes(client: Any, symbol: str, sources: Sequence[str], max_price: float,
                       policy: RetryPolicy | None = None) -> list[PremiumQuoteRecord]:
    """Ask every source concurrently; a source still failing after retries is skipped."""
    policy = policy or RetryPolicy.from_settings()

    async def _one(src: str) -> PremiumQuoteRecord | None:
        try:
            raw = await with_retry(lambda: client.fetch_premium_quote(symbol, src),
                                   f"fetch_premium_quote:{symbol}:{src}", policy=policy)
        except Exception as e:
            logger.debug("premium source failed symbol=%s source=%s: %s", symbol, src, e)
            return None
        return parse_quote(src, raw, max_price) if isinstance(raw, dict) else None

    got = await asyncio.gather(*(_one(s) for s in sources))
    return [q for q in got if q is not None]
