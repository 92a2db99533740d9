"""Statistical helpers over plain float sequences.

Population statistics (divide by N). Empty input returns 0 rather than
raising, matching how snapshots degrade when a series has no data yet.
"""

from __future__ import annotations

import math
from typing import Sequence


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def median(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    s = sorted(values)
    mid = len(s) // 2
    if len(s) % 2 == 0:
        return (s[mid - 1] + s[mid]) / 2
    return s[mid]


def mode(values: Sequence[float]) -> float:
    """Most frequent value; ties go to the value seen first."""
    if not values:
        return 0.0
    counts: dict[float, int] = {}
    for v in values:
        counts[v] = counts.get(v, 0) + 1
    best = values[0]
    best_n = 0
    # dict preserves insertion (= encounter) order
    for v, n in counts.items():
        if n > best_n:
            best, best_n = v, n
    return best


def variance(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    m = mean(values)
    return sum((v - m) ** 2 for v in values) / len(values)


def stdev(values: Sequence[float]) -> float:
    return math.sqrt(variance(values))


def coefficient_of_variation(values: Sequence[float]) -> float:
    m = mean(values)
    if m <= 0:
        return 0.0
    return stdev(values) / m * 100.0


def linear_slope(values: Sequence[float]) -> float:
    """Least-squares slope against sample index 0..n-1."""
    n = len(values)
    if n < 2:
        return 0.0
    sum_x = n * (n - 1) / 2
    sum_y = sum(values)
    sum_xy = sum(i * v for i, v in enumerate(values))
    sum_x2 = sum(i * i for i in range(n))
    denom = n * sum_x2 - sum_x * sum_x
    if denom == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denom


def max_drawdown_pct(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    peak = values[0]
    worst = 0.0
    for v in values[1:]:
        if v > peak:
            peak = v
        elif peak > 0:
            worst = max(worst, (peak - v) / peak)
    return worst * 100.0


def clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))
