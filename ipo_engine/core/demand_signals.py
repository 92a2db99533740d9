"""Subscription demand signals.

Pure functions over category ratios and overall-subscription samples. The
tracker feeds them from polls; the analytics engine reuses the allotment and
timeline helpers.
"""

from __future__ import annotations

import math
from collections import Counter
from datetime import datetime
from typing import Any, Iterable, Sequence

from ipo_engine.core import stats
from ipo_engine.utils.ids import new_alert_id
from ipo_engine.utils.time import calendar_day, hour_key, hours_between, iso, to_ist

MILESTONES = (1, 5, 10, 20, 50)

RAPID_GROWTH_PER_HOUR = 1.0
ALERT_VELOCITY = 2.0
OPENING_RUSH_VELOCITY = 2.0
CLOSING_RUSH_VELOCITY = 3.0
EXTREME_RATIO = 20.0
IMBALANCE_PATTERN = 0.7
TREND_WINDOW = 10

# rupees
MAX_INVESTMENT = {
    "RETAIL": 200_000,
    "NIB": 1_000_000,
    "QIB": 10_000_000,
}

CORE_CATEGORIES = ("RETAIL", "QIB", "NIB")


def velocity(samples: Iterable[tuple[datetime, float]]) -> float:
    """Ratio change per hour between the two most recent samples."""
    ordered = sorted(samples, key=lambda x: to_ist(x[0]))
    if len(ordered) < 2:
        return 0.0
    (t0, r0), (t1, r1) = ordered[-2], ordered[-1]
    dh = hours_between(t0, t1)
    if dh <= 0:
        return 0.0
    return (r1 - r0) / dh


def trend(values: Sequence[float]) -> dict[str, Any]:
    window = list(values)[-TREND_WINDOW:]
    if len(window) < 3:
        return {"direction": "insufficient_data", "slope": 0.0}
    slope = stats.linear_slope(window)
    if slope > 0.1:
        direction = "strong_increasing"
    elif slope > 0.05:
        direction = "increasing"
    elif slope < -0.1:
        direction = "strong_decreasing"
    elif slope < -0.05:
        direction = "decreasing"
    else:
        direction = "stable"
    return {"direction": direction, "slope": round(slope, 4)}


def imbalance(ratios: dict[str, float]) -> dict[str, Any]:
    vals = [v for v in ratios.values() if v is not None]
    if not vals or max(vals) <= 0:
        return {"score": 0.0, "level": "balanced"}
    hi, lo = max(vals), min(vals)
    score = (hi - lo) / hi
    if score < 0.3:
        level = "balanced"
    elif score < 0.6:
        level = "moderate"
    else:
        level = "high"
    return {"score": round(score, 4), "level": level}


def allotment_probability(category: str, ratio: float) -> int:
    """Chance (%) of receiving at least one lot in ``category``.

    Non-increasing in ``ratio`` for a fixed category.
    """
    if ratio <= 0:
        return 0
    if ratio <= 1:
        p = 95.0
    else:
        p = 100.0 / ratio
        if category == "RETAIL" and ratio > 2:
            p = min(p, 80.0)
        elif category == "QIB":
            p = min(p, 90.0)
        elif category == "NIB" and ratio > 3:
            p = min(p, 85.0)
    return int(round(stats.clamp(p, 1.0, 95.0)))


def expected_allocation(category: str, ratio: float, lot_value: float) -> int:
    """Lots an applicant at the category cap can expect."""
    if lot_value <= 0:
        return 1
    cap = MAX_INVESTMENT.get(category, MAX_INVESTMENT["RETAIL"])
    lots = math.floor(cap / lot_value)
    if ratio > 1:
        lots = math.floor(lots / ratio)
    return max(1, int(lots))


def detect_patterns(
    vel: float,
    now: datetime,
    open_date: datetime | None,
    close_date: datetime | None,
    ratios: dict[str, float],
    overall: float,
) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    today = calendar_day(now)
    if open_date is not None and calendar_day(open_date) == today and vel > OPENING_RUSH_VELOCITY:
        out.append({"type": "OPENING_DAY_RUSH", "description": "Heavy bidding on the opening day", "velocity": round(vel, 3)})
    if close_date is not None and calendar_day(close_date) == today and vel > CLOSING_RUSH_VELOCITY:
        out.append({"type": "CLOSING_DAY_RUSH", "description": "Bids piling in on the closing day", "velocity": round(vel, 3)})

    imb = imbalance(ratios)
    if imb["score"] > IMBALANCE_PATTERN:
        out.append({"type": "CATEGORY_IMBALANCE", "description": "Demand concentrated in few categories", "score": imb["score"]})

    retail = ratios.get("RETAIL")
    if retail is not None and overall > 0 and retail > 0.8 * overall:
        out.append({"type": "RETAIL_DOMINANCE", "description": "Retail demand close to the overall peak", "retail": retail})

    qib = ratios.get("QIB")
    if qib is not None and qib > 2:
        out.append({"type": "INSTITUTIONAL_INTEREST", "description": "Strong institutional bidding", "qib": qib})
    return out


def new_milestones(overall: float, fired: set[int]) -> list[int]:
    """Milestones crossed for the first time; ``fired`` is updated in place."""
    hit = [m for m in MILESTONES if overall >= m and m not in fired]
    fired.update(hit)
    return hit


def build_alerts(
    offering_id: int,
    symbol: str,
    ratios: dict[str, float],
    category_velocity: dict[str, float],
    vel: float,
    patterns: list[dict[str, Any]],
    milestones: list[int],
    now: datetime,
) -> list[dict[str, Any]]:
    stamp = iso(now)
    alerts: list[dict[str, Any]] = []

    def _add(kind: str, severity: str, message: str, data: dict[str, Any]) -> None:
        alerts.append({
            "id": new_alert_id(offering_id, kind, f"{stamp}|{sorted(data.items())}"),
            "type": kind,
            "severity": severity,
            "offering_id": offering_id,
            "symbol": symbol,
            "message": message,
            "data": data,
            "timestamp": stamp,
        })

    extreme = {c: r for c, r in ratios.items() if r > EXTREME_RATIO}
    if extreme:
        _add("EXTREME_OVERSUBSCRIPTION", "critical",
             f"{symbol}: extreme oversubscription in {', '.join(sorted(extreme))}", {"categories": extreme})
    for cat in sorted(category_velocity):
        cv = category_velocity[cat]
        if cv > ALERT_VELOCITY:
            _add("RAPID_SUBSCRIPTION_GROWTH", "high",
                 f"{symbol}: {cat} subscription growing {cv:.2f}x per hour",
                 {"category": cat, "velocity": round(cv, 3), "threshold": ALERT_VELOCITY})
    if any(p["type"] == "CLOSING_DAY_RUSH" for p in patterns):
        _add("CLOSING_DAY_RUSH", "medium", f"{symbol}: closing day rush", {"velocity": round(vel, 3)})
    for m in milestones:
        _add("SUBSCRIPTION_MILESTONE", "medium", f"{symbol}: subscribed {m}x", {"milestone": m})
    return alerts


def recommended_strategy(ratio: float) -> str:
    if ratio <= 1:
        return "apply_full_allocation"
    if ratio <= 3:
        return "apply_at_cutoff"
    if ratio <= 10:
        return "apply_minimum_lot"
    return "lottery_minimum_lot"


def rapid_growth_patterns(category_velocity: dict[str, float]) -> list[dict[str, Any]]:
    return [
        {"type": "RAPID_GROWTH", "category": cat, "description": f"{cat} subscription growing faster than 1x per hour",
         "velocity": round(v, 3)}
        for cat, v in sorted(category_velocity.items())
        if v > RAPID_GROWTH_PER_HOUR
    ]


def prediction_confidence(vel: float, remaining: float) -> float:
    confidence = 0.5
    if abs(vel) < 0.1:
        confidence += 0.2
    elif abs(vel) < 0.5:
        confidence += 0.1
    if remaining < 6:
        confidence += 0.2
    elif remaining < 24:
        confidence += 0.1
    return min(0.9, confidence)


def predict(
    overall: float,
    vel: float,
    close_date: datetime | None,
    now: datetime,
    ratios: dict[str, float],
    category_velocity: dict[str, float] | None = None,
) -> dict[str, Any]:
    """Closing projections.

    Each category is extrapolated with its own velocity; ``vel`` (overall)
    drives the headline projection and the time to full subscription.
    """
    remaining = 0.0
    if close_date is not None:
        # bidding runs until end of the close date
        end = to_ist(close_date).replace(hour=23, minute=59, second=59, microsecond=0)
        remaining = max(0.0, hours_between(now, end))

    projected = max(overall, overall + vel * remaining)
    confidence = prediction_confidence(vel, remaining)

    closing: dict[str, dict[str, float]] = {}
    for cat, ratio in ratios.items():
        cv = (category_velocity or {}).get(cat, 0.0)
        closing[cat] = {
            "current": round(ratio, 4),
            "projected": round(max(ratio, ratio + cv * remaining), 2),
            "confidence": round(prediction_confidence(cv, remaining), 2),
        }

    time_to_full = None
    if overall < 1 and vel > 0:
        time_to_full = round((1 - overall) / vel, 2)

    winner = max(ratios.items(), key=lambda kv: kv[1])[0] if ratios else None
    return {
        "projected_final_subscription": round(projected, 2),
        "confidence": round(confidence, 2),
        "hours_remaining": round(remaining, 2),
        "time_to_full_subscription_hours": time_to_full,
        "category_winner": winner,
        "closing_subscription": closing,
        "recommended_strategy": recommended_strategy(overall),
    }


def build_timeline(rows: Iterable[Any]) -> list[dict[str, Any]]:
    """Group subscription rows by hour; per-hour total is the max category ratio."""
    buckets: dict[str, dict[str, float]] = {}
    for r in rows:
        key = hour_key(r.timestamp)
        cats = buckets.setdefault(key, {})
        cat = r.category
        cats[cat] = max(cats.get(cat, 0.0), float(r.subscription_ratio))
    out = []
    for key in sorted(buckets):
        cats = buckets[key]
        out.append({"hour": key, "total": round(max(cats.values()), 4) if cats else 0.0, "categories": cats})
    return out


def baseline_trend(totals: Sequence[float]) -> dict[str, Any]:
    if len(totals) < 2:
        return {"direction": "insufficient_data", "change_pct": 0.0}
    half = len(totals) // 2
    first, second = stats.mean(totals[:half]), stats.mean(totals[half:])
    change = (second - first) / first * 100.0 if first > 0 else 0.0
    if change > 20:
        direction = "strong_increasing"
    elif change > 5:
        direction = "increasing"
    elif change < -20:
        direction = "strong_decreasing"
    elif change < -5:
        direction = "decreasing"
    else:
        direction = "stable"
    return {"direction": direction, "change_pct": round(change, 2)}


def data_quality_score(categories: Iterable[str], raw_count: int) -> int:
    present = set(categories)
    score = 100
    for c in CORE_CATEGORIES:
        if c not in present:
            score -= 20
    if len(present) >= 3:
        score += 10
    if raw_count >= 5:
        score += 5
    return int(stats.clamp(score, 0, 100))


def demand_insights(overall: float) -> list[dict[str, Any]]:
    if overall > 5:
        return [{"type": "HIGH_DEMAND", "message": f"Heavily subscribed at {overall:.2f}x"}]
    if overall > 1:
        return [{"type": "MODERATE_DEMAND", "message": f"Fully subscribed at {overall:.2f}x"}]
    if overall < 0.5:
        return [{"type": "LOW_DEMAND", "message": f"Weak demand at {overall:.2f}x"}]
    return []


def demand_recommendations(ratios: dict[str, float], overall: float, hours_remaining: float) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    retail = ratios.get("RETAIL", 0.0)
    nib = ratios.get("NIB")

    if overall < 0.5:
        out.append({"action": "AVOID", "reason": "Demand well below the issue size"})
    elif allotment_probability("RETAIL", retail) >= 50:
        out.append({"action": "APPLY", "reason": "Good retail allotment odds"})

    if nib is not None and retail > 0 and nib < retail / 2:
        out.append({"action": "CATEGORY_SWITCH", "reason": "NIB category is far less contested than retail", "category": "NIB"})

    if 0 < hours_remaining < 6:
        out.append({"action": "URGENT", "reason": f"Bidding closes in {hours_remaining:.1f}h"})
    return out


def market_trends(entries: Sequence[tuple[float, dict[str, float]]]) -> dict[str, Any]:
    """Aggregate across tracked offerings: entries are (overall, ratios) pairs."""
    if not entries:
        return {"tracked": 0, "average_subscription": 0.0, "oversubscribed": 0,
                "undersubscribed": 0, "dominant_category": None, "sentiment": "neutral"}
    overalls = [o for o, _ in entries]
    avg = stats.mean(overalls)
    tops = Counter(max(r.items(), key=lambda kv: kv[1])[0] for _, r in entries if r)

    if avg > 3:
        sentiment = "very_bullish"
    elif avg > 1.5:
        sentiment = "bullish"
    elif avg < 0.5:
        sentiment = "bearish"
    elif avg < 0.8:
        sentiment = "cautious"
    else:
        sentiment = "neutral"
    return {
        "tracked": len(entries),
        "average_subscription": round(avg, 2),
        "oversubscribed": sum(1 for o in overalls if o > 1),
        "undersubscribed": sum(1 for o in overalls if o < 1),
        "dominant_category": tops.most_common(1)[0][0] if tops else None,
        "sentiment": sentiment,
    }
