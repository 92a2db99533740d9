"""Ingestion checks for upstream offering, category, quote and demand payloads."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from ipo_engine.core.records import (
    CATEGORIES,
    OFFERING_STATUSES,
    CategoryRecord,
    DemandPoint,
    OfferingRecord,
)
from ipo_engine.errors import DataValidationError
from ipo_engine.utils.time import now_ist, parse_dt, to_ist

CATEGORY_ALIASES: dict[str, str] = {
    "RETAIL": "RETAIL",
    "IND": "RETAIL",
    "INDIV": "RETAIL",
    "QIB": "QIB",
    "INST": "QIB",
    "INSTITUTIONAL": "QIB",
    "NIB": "NIB",
    "NII": "NIB",
    "HNI": "NIB",
    "NON_INSTITUTIONAL": "NIB",
    "EMP": "EMPLOYEE",
    "EMPLOYEE": "EMPLOYEE",
    "ANCHOR": "ANCHOR",
}

STATUS_ALIASES: dict[str, str] = {
    "upcoming": "upcoming",
    "forthcoming": "upcoming",
    "open": "open",
    "active": "open",
    "live": "open",
    "closed": "closed",
    "listed": "listed",
    "withdrawn": "withdrawn",
    "cancelled": "cancelled",
    "canceled": "cancelled",
}

# forward lifecycle; withdrawn/cancelled branch off any pre-listed state
_STATUS_RANK = {"upcoming": 0, "open": 1, "closed": 2, "listed": 3}
_TERMINAL = {"withdrawn", "cancelled"}

SIGNIFICANT_FIELDS = (
    "name",
    "min_price",
    "max_price",
    "open_date",
    "close_date",
    "listing_date",
    "status",
    "lot_size",
    "issue_size",
)


@dataclass
class ValidationCheck:
    """Single validation check result."""

    name: str
    passed: bool
    message: str = ""


@dataclass
class ValidationResult:
    """Aggregate validation result."""

    checks: list[ValidationCheck] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def errors(self) -> list[str]:
        return [c.message for c in self.checks if not c.passed]


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for k in keys:
        v = raw.get(k)
        if v is not None and v != "":
            return v
    return None


def _to_float(v: Any) -> float | None:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        f = float(v)
    else:
        s = str(v).replace(",", "").strip()
        if not s:
            return None
        try:
            f = float(s)
        except ValueError:
            return None
    return f if math.isfinite(f) else None


def _to_int(v: Any) -> int | None:
    f = _to_float(v)
    if f is None or f != int(f):
        return None
    return int(f)


def _price_band(raw: dict[str, Any]) -> tuple[float | None, float | None]:
    lo = _to_float(_first(raw, "min_price", "minPrice"))
    hi = _to_float(_first(raw, "max_price", "maxPrice"))
    band = raw.get("price_band") or raw.get("priceBand") or raw.get("issuePrice")
    if (lo is None or hi is None) and isinstance(band, str) and band.strip():
        # "Rs.100 to Rs.120" / "100-120"
        cleaned = band.replace("Rs.", "").replace("₹", "").replace(" to ", "-")
        parts = [p for p in (x.strip() for x in cleaned.split("-")) if p]
        if len(parts) == 2:
            lo = lo if lo is not None else _to_float(parts[0])
            hi = hi if hi is not None else _to_float(parts[1])
        elif len(parts) == 1:
            lo = hi = _to_float(parts[0])
    return lo, hi


def normalize_category(code: Any) -> str:
    c = str(code or "").strip().upper()
    return CATEGORY_ALIASES.get(c, c)


def normalize_status(raw_status: Any, open_date: datetime | None, close_date: datetime | None,
                     listing_date: datetime | None, now: datetime | None = None) -> str:
    s = STATUS_ALIASES.get(str(raw_status or "").strip().lower())
    if s:
        return s

    # derive from the calendar when upstream status is missing/unknown
    now = to_ist(now or now_ist())
    if listing_date is not None and now >= to_ist(listing_date):
        return "listed"
    if open_date is not None and now < to_ist(open_date):
        return "upcoming"
    if close_date is not None:
        # bidding closes at the end of the close date
        end = to_ist(close_date).replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
        if now < end:
            return "open"
        return "closed"
    return "upcoming"


def is_status_regression(old: str | None, new: str) -> bool:
    """True when moving ``old -> new`` would go backwards in the lifecycle."""
    if not old or old == new:
        return False
    if old in _TERMINAL:
        return True
    if new in _TERMINAL:
        # only from a pre-listed state
        return old == "listed"
    return _STATUS_RANK.get(new, 0) < _STATUS_RANK.get(old, 0)


def validate_offering(raw: dict[str, Any]) -> ValidationResult:
    """Run ingestion checks on one raw offering payload.

    Checks:
        1. symbol present (non-empty string)
        2. name present (non-empty string)
        3. bidding dates present and parseable
        4. price band present with min <= max
        5. lot size is a positive integer
    """
    result = ValidationResult()
    if not isinstance(raw, dict):
        result.checks.append(ValidationCheck("shape", False, "Record is not an object"))
        return result

    symbol = raw.get("symbol")
    ok = isinstance(symbol, str) and bool(symbol.strip())
    result.checks.append(ValidationCheck("symbol", ok, "" if ok else "Invalid or missing symbol"))

    name = _first(raw, "name", "companyName")
    ok = isinstance(name, str) and bool(name.strip())
    result.checks.append(ValidationCheck("name", ok, "" if ok else "Invalid or missing name"))

    open_dt = parse_dt(_first(raw, "open_date", "openDate", "biddingStartDate"))
    close_dt = parse_dt(_first(raw, "close_date", "closeDate", "biddingEndDate"))
    ok = open_dt is not None and close_dt is not None
    result.checks.append(ValidationCheck("dates", ok, "" if ok else "Missing bidding dates"))
    if ok and close_dt < open_dt:
        result.checks.append(ValidationCheck("date_order", False, "Close date before open date"))

    lo, hi = _price_band(raw)
    if lo is None or hi is None:
        result.checks.append(ValidationCheck("price_band", False, "Missing price band"))
    elif lo < 0 or hi < 0:
        result.checks.append(ValidationCheck("price_band", False, "Negative price"))
    elif lo > hi:
        result.checks.append(ValidationCheck("price_band", False, "Min price cannot be greater than max price"))
    else:
        result.checks.append(ValidationCheck("price_band", True))

    lot_raw = _first(raw, "lot_size", "lotSize", "marketLot")
    lot = _to_int(lot_raw)
    ok = lot is not None and lot > 0
    result.checks.append(ValidationCheck("lot_size", ok, "" if ok else "Invalid lot size"))

    return result


def parse_offering(raw: dict[str, Any], now: datetime | None = None) -> OfferingRecord:
    """Validate and convert; raises DataValidationError with every failed check."""
    res = validate_offering(raw)
    symbol = raw.get("symbol") if isinstance(raw, dict) else None
    if not res.passed:
        raise DataValidationError(
            f"invalid offering record {symbol!r}: {'; '.join(res.errors)}",
            errors=res.errors,
            symbol=symbol if isinstance(symbol, str) else None,
        )

    lo, hi = _price_band(raw)
    open_dt = parse_dt(_first(raw, "open_date", "openDate", "biddingStartDate"))
    close_dt = parse_dt(_first(raw, "close_date", "closeDate", "biddingEndDate"))
    listing_dt = parse_dt(_first(raw, "listing_date", "listingDate"))
    issue_size = _to_float(_first(raw, "issue_size", "issueSize")) or 0.0

    cats = raw.get("categories") or raw.get("categoryDetails") or ()
    return OfferingRecord(
        symbol=str(raw["symbol"]).strip().upper(),
        name=str(_first(raw, "name", "companyName")).strip(),
        status=normalize_status(raw.get("status"), open_dt, close_dt, listing_dt, now=now),
        min_price=float(lo),
        max_price=float(hi),
        lot_size=int(_to_int(_first(raw, "lot_size", "lotSize", "marketLot"))),
        issue_size=int(issue_size),
        open_date=open_dt,
        close_date=close_dt,
        listing_date=listing_dt,
        issue_type=_first(raw, "issue_type", "issueType", "series"),
        sector=_first(raw, "sector", "industry"),
        registrar=_first(raw, "registrar"),
        face_value=_to_float(_first(raw, "face_value", "faceValue")),
        categories=tuple(c for c in cats if isinstance(c, dict)) if isinstance(cats, (list, tuple)) else (),
    )


def _same_instant(a: datetime | None, b: datetime | None) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return to_ist(a) == to_ist(b)


def has_significant_changes(existing: Any, record: OfferingRecord, ignore: tuple[str, ...] = ()) -> bool:
    """Compare a stored offering row against an incoming record.

    Dates are compared by instant, issue size by its string form, everything
    else by equality.
    """
    for f in SIGNIFICANT_FIELDS:
        if f in ignore:
            continue
        old = getattr(existing, f, None)
        new = getattr(record, f, None)
        if f.endswith("_date"):
            if not _same_instant(old, new):
                return True
        elif f == "issue_size":
            if str(int(old or 0)) != str(int(new or 0)):
                return True
        elif f in ("min_price", "max_price"):
            if float(old or 0.0) != float(new or 0.0):
                return True
        elif old != new:
            return True
    return False


def parse_category(raw: dict[str, Any], ts: datetime) -> CategoryRecord | None:
    """Normalize one upstream category row; None when it has no usable code."""
    if not isinstance(raw, dict):
        return None
    code = _first(raw, "category", "categoryCode", "code")
    if not isinstance(code, str) or not code.strip():
        return None

    category = normalize_category(code)
    sub = _first(raw, "sub_category", "subCategory", "subCategoryCode", "subCatCode")
    sub = str(sub).strip().upper() if sub is not None else None
    if sub is None and code.strip().upper() != category:
        # the alias itself names the sub-segment (IND -> RETAIL/IND)
        cfg = CATEGORIES.get(category)
        if cfg and code.strip().upper() in cfg.sub_categories:
            sub = code.strip().upper()

    quantity = _to_int(_first(raw, "quantity", "absoluteQuantity", "noOfSharesBid")) or 0
    bid_count = _to_int(_first(raw, "bid_count", "bidCount", "absoluteBidCount", "noOfTotalMeant")) or 0
    ratio = _to_float(_first(raw, "subscription_ratio", "subscriptionRatio", "noOfTime"))
    if ratio is None:
        offered = _to_float(_first(raw, "offered", "noOfSharesOffered"))
        ratio = quantity / offered if offered else 0.0

    ts_raw = parse_dt(_first(raw, "timestamp", "updateTime"))
    return CategoryRecord(
        category=category,
        sub_category=sub,
        quantity=max(0, quantity),
        bid_count=max(0, bid_count),
        subscription_ratio=max(0.0, float(ratio)),
        timestamp=ts_raw or ts,
    )


def parse_categories(rows: list[dict[str, Any]] | None, ts: datetime) -> list[CategoryRecord]:
    out: list[CategoryRecord] = []
    for r in rows or []:
        c = parse_category(r, ts)
        if c is not None:
            out.append(c)
    return out


def parse_demand(rows: list[dict[str, Any]] | None, ts: datetime) -> list[DemandPoint]:
    out: list[DemandPoint] = []
    for r in rows or []:
        if not isinstance(r, dict):
            continue
        price_raw = _first(r, "price")
        cutoff = str(price_raw).strip().lower() in {"cut-off", "cutoff"} or bool(r.get("cutoff"))
        out.append(
            DemandPoint(
                price=None if cutoff else _to_float(price_raw),
                cutoff=cutoff,
                quantity=max(0, _to_int(_first(r, "quantity", "absoluteQuantity")) or 0),
                bid_count=max(0, _to_int(_first(r, "bid_count", "absoluteBidCount")) or 0),
                timestamp=parse_dt(_first(r, "timestamp")) or ts,
            )
        )
    return out


def overall_subscription(categories: list[CategoryRecord] | list[float]) -> float:
    """Overall subscription is the max across categories, not a blend."""
    ratios = [c if isinstance(c, (int, float)) else c.subscription_ratio for c in categories]
    return max(ratios) if ratios else 0.0


def known_status(status: str) -> bool:
    return status in OFFERING_STATUSES
