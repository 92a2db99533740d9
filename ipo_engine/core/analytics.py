from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Sequence

from ipo_engine.adapters.cache import CacheBackend
from ipo_engine.config import Settings, settings as default_settings
from ipo_engine.core import stats
from ipo_engine.core.demand_signals import allotment_probability, build_timeline
from ipo_engine.database.engine import SessionLocal
from ipo_engine.database.repo import Repo, offering_to_dict
from ipo_engine.errors import OfferingNotFoundError
from ipo_engine.utils.time import hours_between, iso, now_ist, to_ist

logger = logging.getLogger(__name__)

CRORE = 10_000_000
VAR_95_Z = 1.645


# ---------------------------
# Pure computations
# ---------------------------

def issue_size_category(issue_size: float) -> str:
    crore = float(issue_size or 0) / CRORE
    if crore < 500:
        return "small"
    if crore < 2000:
        return "medium"
    return "large"


def basic_metrics(offering: dict[str, Any], now=None) -> dict[str, Any]:
    now = now or now_ist()
    lo, hi = float(offering["min_price"]), float(offering["max_price"])
    lot = int(offering["lot_size"])
    spread = hi - lo
    out = {
        "symbol": offering["symbol"],
        "status": offering["status"],
        "price_band": [lo, hi],
        "price_spread": round(spread, 2),
        "price_spread_pct": round(spread / lo * 100.0, 2) if lo > 0 else 0.0,
        "lot_size": lot,
        "min_investment": round(lot * hi, 2),
        "issue_size": int(offering.get("issue_size") or 0),
        "issue_size_crore": round(float(offering.get("issue_size") or 0) / CRORE, 2),
        "issue_size_category": issue_size_category(offering.get("issue_size") or 0),
    }
    for k in ("open_date", "close_date", "listing_date"):
        v = offering.get(k)
        out[f"days_to_{k[:-5]}"] = round(hours_between(now, v) / 24.0, 1) if v is not None else None
    return out


def premium_trend(values: Sequence[float]) -> dict[str, Any]:
    """``values`` newest first: recent window vs older window."""
    n = len(values)
    w = min(5, n // 2)
    if w < 1:
        return {"direction": "stable", "change_pct": 0.0}
    recent = stats.mean(values[:w])
    older = stats.mean(values[-w:])
    change = (recent - older) / abs(older) * 100.0 if older != 0 else 0.0
    if change > 5:
        direction = "bullish"
    elif change < -5:
        direction = "bearish"
    else:
        direction = "stable"
    return {"direction": direction, "change_pct": round(change, 2)}


def volatility_level(cv: float) -> str:
    if cv > 30:
        return "high"
    if cv > 15:
        return "medium"
    return "low"


def momentum(values: Sequence[float]) -> dict[str, Any]:
    """Latest vs. the third most recent value (newest first)."""
    if len(values) < 3 or values[2] == 0:
        return {"direction": "neutral", "change_pct": 0.0}
    change = (values[0] - values[2]) / abs(values[2]) * 100.0
    if change > 2:
        direction = "positive"
    elif change < -2:
        direction = "negative"
    else:
        direction = "neutral"
    return {"direction": direction, "change_pct": round(change, 2)}


def premium_analytics(values: Sequence[float]) -> dict[str, Any]:
    """Summary statistics of a premium series ordered newest first."""
    if not values:
        return {"count": 0, "current": None, "trend": premium_trend(()), "volatility": "low",
                "momentum": momentum(())}
    vals = [float(v) for v in values]
    sd = stats.stdev(vals)
    cv = stats.coefficient_of_variation(vals)
    return {
        "count": len(vals),
        "current": vals[0],
        "mean": round(stats.mean(vals), 4),
        "median": stats.median(vals),
        "mode": stats.mode(vals),
        "min": min(vals),
        "max": max(vals),
        "range": max(vals) - min(vals),
        "stdev": round(sd, 4),
        "variance": round(stats.variance(vals), 4),
        "coefficient_of_variation": round(cv, 2),
        "var_95": round(VAR_95_Z * sd, 4),
        "max_drawdown_pct": round(stats.max_drawdown_pct(list(reversed(vals))), 2),
        "trend": premium_trend(vals),
        "volatility": volatility_level(cv),
        "momentum": momentum(vals),
    }


def latest_by_category(rows: Sequence[Any]) -> dict[str, Any]:
    """Latest row per category + sub-category, by timestamp."""
    latest: dict[str, Any] = {}
    for r in rows:
        key = f"{r.category}{r.sub_category or ''}"
        cur = latest.get(key)
        if cur is None or to_ist(r.timestamp) > to_ist(cur.timestamp):
            latest[key] = r
    return latest


def subscription_analytics(rows: Sequence[Any]) -> dict[str, Any]:
    latest = latest_by_category(rows)
    ratios: dict[str, float] = {}
    for r in latest.values():
        ratios[r.category] = max(ratios.get(r.category, 0.0), float(r.subscription_ratio))
    overall = max(ratios.values()) if ratios else 0.0
    timeline = build_timeline(rows)
    return {
        "overall": round(overall, 4),
        "categories": {k: round(v, 4) for k, v in ratios.items()},
        "allotment_probability": {k: allotment_probability(k, v) for k, v in ratios.items()},
        "total_bids": sum(int(r.bid_count) for r in latest.values()),
        "total_quantity": sum(int(r.quantity) for r in latest.values()),
        "samples": len(rows),
        "last_updated": iso(max((to_ist(r.timestamp) for r in rows), default=None)),
        "timeline": timeline,
    }


RISK_RECOMMENDATION = {
    "low": "Suitable for most investors",
    "medium": "Moderate risk; size the application with care",
    "high": "High risk; only for risk-tolerant investors",
}


def risk_assessment(premium: dict[str, Any], subscription: dict[str, Any], offering: dict[str, Any],
                    large_issue_size: float = 5000 * CRORE) -> dict[str, Any]:
    score = 50.0
    factors: list[dict[str, Any]] = []

    mean = premium.get("mean") or 0.0
    if mean > 0:
        vol_ratio = (premium.get("stdev") or 0.0) / mean
        if vol_ratio > 0.3:
            score += 20
            factors.append({"factor": "high_premium_volatility", "impact": 20, "value": round(vol_ratio, 4)})
        elif vol_ratio > 0.15:
            score += 10
            factors.append({"factor": "moderate_premium_volatility", "impact": 10, "value": round(vol_ratio, 4)})

    # no subscription rows yet: demand is unknown, not low
    if subscription.get("samples"):
        sub = float(subscription.get("overall") or 0.0)
        if sub < 0.5:
            score += 25
            factors.append({"factor": "low_subscription", "impact": 25, "value": sub})
        elif sub > 10:
            score += 15
            factors.append({"factor": "excessive_subscription", "impact": 15, "value": sub})

    if float(offering.get("issue_size") or 0) > large_issue_size:
        score += 10
        factors.append({"factor": "large_issue_size", "impact": 10, "value": int(offering["issue_size"])})

    lo, hi = float(offering["min_price"]), float(offering["max_price"])
    if lo > 0 and (hi - lo) / lo > 0.2:
        score += 5
        factors.append({"factor": "wide_price_band", "impact": 5, "value": round((hi - lo) / lo, 4)})

    score = stats.clamp(score, 0, 100)
    level = "low" if score < 30 else "medium" if score < 60 else "high"
    return {"score": score, "level": level, "factors": factors, "recommendation": RISK_RECOMMENDATION[level]}


def predictions(premium: dict[str, Any], subscription: dict[str, Any], risk: dict[str, Any],
                offering: dict[str, Any]) -> dict[str, Any]:
    gmp = float(premium.get("current") or 0.0)
    sub = float(subscription.get("overall") or 0.0)
    r = float(risk["score"])

    gain = 0.8 * gmp * (1 - r / 200.0)
    if subscription.get("samples"):
        if sub > 5:
            gain *= 0.9
        elif sub < 1:
            gain *= 0.7

    if sub > 1:
        allot = min(95.0, 100.0 / sub)
    else:
        allot = 100.0

    hi = float(offering["max_price"])
    return {
        "listing_gain": {
            "value": round(gain, 2),
            "confidence": 0.6,
            # a negative gain flips the band
            "range": {"min": round(min(gain * 0.7, gain * 1.3)), "max": round(max(gain * 0.7, gain * 1.3))},
        },
        "allotment_probability": {"value": round(allot, 2), "confidence": 0.8},
        "price_targets": {
            "conservative": round(hi + gmp * 0.5, 2),
            "moderate": round(hi + gmp * 0.8, 2),
            "aggressive": round(hi + gmp * 1.2, 2),
        },
        "risk_adjusted_return": {
            "value": round(gain * (1 - r / 100.0), 2),
            "sharpe_like": round(gain / r, 4) if r > 0 else 0.0,
        },
    }


def insights(premium: dict[str, Any], subscription: dict[str, Any], risk: dict[str, Any]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    cur, avg = premium.get("current"), premium.get("mean")
    if cur is not None and avg and cur > 1.2 * avg:
        out.append({"type": "positive", "title": "Strong GMP", "message": "Current premium well above its average"})
    if premium.get("volatility") == "high":
        out.append({"type": "warning", "title": "High Volatility", "message": "Premium has been swinging widely"})
    sub = float(subscription.get("overall") or 0.0)
    if sub > 5:
        out.append({"type": "positive", "title": "Strong Demand", "message": f"Subscribed {sub:.2f}x"})
    elif subscription.get("samples") and sub < 1:
        out.append({"type": "warning", "title": "Undersubscribed", "message": f"Only {sub:.2f}x subscribed"})
    if risk["level"] == "high":
        out.append({"type": "warning", "title": "High Risk", "message": risk["recommendation"]})
    return out


def recommendations(premium: dict[str, Any], subscription: dict[str, Any], risk: dict[str, Any]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    r = float(risk["score"])
    sub = float(subscription.get("overall") or 0.0)
    gmp = float(premium.get("current") or 0.0)

    if r < 30 and sub > 2 and gmp > 0:
        out.append({"action": "BUY", "reason": "Low risk with solid demand and positive premium", "confidence": 0.8})
    elif r < 50 and sub > 1:
        out.append({"action": "HOLD", "reason": "Moderate risk; demand covers the issue", "confidence": 0.6})
    if r > 70 or sub < 0.5:
        out.append({"action": "AVOID", "reason": "High risk or weak demand", "confidence": 0.7})
    if sub > 10:
        out.append({"action": "ALLOCATION", "reason": "Heavy oversubscription; expect small allotments", "confidence": 0.7})
    return out


def extract_for_db(snapshot: dict[str, Any]) -> dict[str, Any]:
    prem = snapshot.get("premium") or {}
    sub = snapshot.get("subscription") or {}
    cats = sub.get("categories") or {}
    pred = snapshot.get("predictions") or {}
    return {
        "total_premium_changes": int(prem.get("count") or 0),
        "avg_premium": prem.get("mean"),
        "max_premium": prem.get("max"),
        "min_premium": prem.get("min"),
        "premium_volatility": prem.get("stdev"),
        "overall_subscription": sub.get("overall"),
        "retail_subscription": cats.get("RETAIL"),
        "qib_subscription": cats.get("QIB"),
        "nib_subscription": cats.get("NIB"),
        "predicted_listing_gain": (pred.get("listing_gain") or {}).get("value"),
        "allotment_probability": (pred.get("allotment_probability") or {}).get("value"),
        "risk_score": (snapshot.get("risk") or {}).get("score"),
    }


# ---------------------------
# Engine (cache + persistence)
# ---------------------------

@dataclass
class _Entry:
    expires_at: float
    stored_at: float
    snapshot: dict[str, Any]


class AnalyticsEngine:
    """Snapshot computation with a two-tier cache.

    Lookup order: in-process entry (fresh), shared cache, recompute. A failed
    recompute falls back to the last snapshot held in-process (or, after a
    restart, the persisted one), flagged stale.
    """

    def __init__(self, cache: CacheBackend, session_factory: Callable = SessionLocal,
                 cfg: Settings | None = None) -> None:
        self.cfg = cfg or default_settings
        self.cache = cache
        self._session_factory = session_factory
        self._local: dict[str, _Entry] = {}
        self.computations = 0
        self.cache_hits = 0
        self.cache_misses = 0
        self.errors = 0
        self._total_ms = 0.0

    @staticmethod
    def cache_key(offering_id: int, time_range_days: int, include_historical: bool, include_predictions: bool) -> str:
        return f"{int(offering_id)}:{int(time_range_days)}:{int(bool(include_historical))}:{int(bool(include_predictions))}"

    def compute(self, offering_id: int, time_range_days: int | None = None,
                include_historical: bool = True, include_predictions: bool = True) -> dict[str, Any]:
        """Recompute from the store; no caching."""
        days = int(time_range_days or self.cfg.ANALYTICS_TIME_RANGE_DAYS)
        now = now_ist()
        since = now - timedelta(days=days)
        with self._session_factory() as s:
            repo = Repo(s)
            o = repo.offerings.get(offering_id)
            if o is None:
                raise OfferingNotFoundError(offering_id)
            offering = offering_to_dict(o)
            offering["open_date"] = o.open_date
            offering["close_date"] = o.close_date
            offering["listing_date"] = o.listing_date
            quotes = repo.premium_quotes.list_since(offering_id, since=since, limit=1000)
            subs = repo.subscriptions.list_since(offering_id, since=since, limit=5000)

        values = [float(q.value) for q in quotes]
        basic = basic_metrics(offering, now=now)
        prem = premium_analytics(values)
        sub = subscription_analytics(subs)
        risk = risk_assessment(prem, sub, offering, large_issue_size=self.cfg.ANALYTICS_LARGE_ISSUE_SIZE)

        snap: dict[str, Any] = {
            "offering_id": int(offering_id),
            "symbol": offering["symbol"],
            "computed_at": iso(now),
            "time_range_days": days,
            "basic": basic,
            "premium": prem,
            "subscription": sub,
            "risk": risk,
            "insights": insights(prem, sub, risk),
            "recommendations": recommendations(prem, sub, risk),
        }
        if include_predictions:
            snap["predictions"] = predictions(prem, sub, risk, offering)
        if include_historical:
            snap["historical"] = {
                "premium": [{"value": float(q.value), "timestamp": iso(q.timestamp)} for q in quotes],
            }
        else:
            snap["subscription"] = {k: v for k, v in sub.items() if k != "timeline"}
        return snap

    def get_snapshot(self, offering_id: int, time_range_days: int | None = None,
                     include_historical: bool = True, include_predictions: bool = True,
                     force: bool = False) -> dict[str, Any]:
        days = int(time_range_days or self.cfg.ANALYTICS_TIME_RANGE_DAYS)
        key = self.cache_key(offering_id, days, include_historical, include_predictions)
        now_mono = time.monotonic()

        if not force:
            entry = self._local.get(key)
            if entry is not None and entry.expires_at > now_mono:
                self.cache_hits += 1
                return entry.snapshot
            shared = self.cache.get_analytics("snapshot", key)
            if isinstance(shared, dict):
                self.cache_hits += 1
                self._store_local(key, shared)
                return shared
        self.cache_misses += 1

        t0 = time.monotonic()
        try:
            snap = self.compute(offering_id, days, include_historical, include_predictions)
        except OfferingNotFoundError:
            raise
        except Exception as e:
            self.errors += 1
            stale = self._last_good(offering_id, key)
            if stale is not None:
                logger.warning("analytics refresh failed offering_id=%s, serving stale snapshot: %s", offering_id, e)
                return {**stale, "stale": True}
            raise
        finally:
            self._record_latency((time.monotonic() - t0) * 1000.0)

        self._store_local(key, snap)
        self.cache.cache_analytics("snapshot", key, snap, ttl_seconds=self.cfg.ANALYTICS_SHARED_TTL_SEC)
        return snap

    def refresh(self, offering_id: int) -> dict[str, Any]:
        """Force recompute with default options, persist, and cache by id and symbol."""
        snap = self.get_snapshot(offering_id, force=True)
        if snap.get("stale"):
            return snap
        with self._session_factory() as s:
            row = Repo(s).analytics.upsert(offering_id, extract_for_db(snap), snap)
            version = int(row.version)
            s.commit()
        snap["version"] = version
        ttl = self.cfg.ANALYTICS_SHARED_TTL_SEC
        self.cache.cache_analytics("offering", offering_id, snap, ttl_seconds=ttl)
        self.cache.cache_analytics("symbol", snap["symbol"], snap, ttl_seconds=ttl)
        return snap

    def invalidate(self, offering_id: int, symbol: str | None = None) -> None:
        prefix = f"{int(offering_id)}:"
        for key in [k for k in self._local if k.startswith(prefix)]:
            # expired, not dropped: still the fallback if the next recompute fails
            self._local[key].expires_at = 0.0
            self.cache.delete(self.cache.key("analytics", "snapshot", key))
        self.cache.invalidate_analytics(offering_id, symbol)

    def _last_good(self, offering_id: int, key: str) -> dict[str, Any] | None:
        """Latest known snapshot: the in-process entry, else the persisted one."""
        entry = self._local.get(key)
        if entry is not None:
            return entry.snapshot
        try:
            with self._session_factory() as s:
                row = Repo(s).analytics.get(offering_id)
                if row is None or not row.payload:
                    return None
                return {**row.payload, "version": int(row.version)}
        except Exception as e:
            logger.warning("persisted analytics unavailable offering_id=%s: %s", offering_id, e)
            return None

    def _store_local(self, key: str, snap: dict[str, Any]) -> None:
        now_mono = time.monotonic()
        self._local[key] = _Entry(now_mono + float(self.cfg.ANALYTICS_LOCAL_TTL_SEC), now_mono, snap)

    def _record_latency(self, ms: float) -> None:
        self.computations += 1
        self._total_ms += ms

    def prune_local(self, max_age_sec: float = 24 * 3600) -> int:
        """Drop in-process entries (including stale fallbacks) older than ``max_age_sec``."""
        cutoff = time.monotonic() - max_age_sec
        old = [k for k, e in self._local.items() if e.stored_at < cutoff]
        for k in old:
            del self._local[k]
        return len(old)

    def metrics(self) -> dict[str, Any]:
        lookups = self.cache_hits + self.cache_misses
        return {
            "computations": self.computations,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_hit_rate": round(self.cache_hits / lookups * 100.0, 2) if lookups else 0.0,
            "errors": self.errors,
            "average_computation_ms": round(self._total_ms / self.computations, 2) if self.computations else 0.0,
            "local_entries": len(self._local),
        }
