from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo

IST_TZ = ZoneInfo("Asia/Kolkata")
UTC_TZ = ZoneInfo("UTC")


def now_ist() -> datetime:
    return datetime.now(tz=IST_TZ)


def to_ist(dt: datetime) -> datetime:
    """
    Convert datetime to Asia/Kolkata.

    Contract:
    - If dt is naive, treat it as Asia/Kolkata local time (NOT UTC).
      Exchange dates (open/close/listing) are published in IST.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=IST_TZ)
    return dt.astimezone(IST_TZ)


def fmt_ts_millis(dt: datetime) -> str:
    dt = to_ist(dt)
    return dt.strftime("%Y-%m-%d %H:%M:%S.") + f"{int(dt.microsecond / 1000):03d}"


def now_ist_str() -> str:
    return fmt_ts_millis(now_ist())


def iso(dt: datetime | None) -> str | None:
    return to_ist(dt).isoformat() if dt is not None else None


def calendar_day(dt: datetime) -> date:
    return to_ist(dt).date()


def hour_key(dt: datetime) -> str:
    # YYYY-MM-DDTHH, IST
    return to_ist(dt).strftime("%Y-%m-%dT%H")


def hours_between(a: datetime, b: datetime) -> float:
    return (to_ist(b) - to_ist(a)).total_seconds() / 3600.0


def parse_dt(v: object) -> datetime | None:
    """Best-effort parse of upstream date values.

    Accepts datetime, date, ISO strings and the exchange's "dd-Mon-yyyy" form.
    """
    if v is None:
        return None
    if isinstance(v, datetime):
        return to_ist(v)
    if isinstance(v, date):
        return datetime(v.year, v.month, v.day, tzinfo=IST_TZ)
    s = str(v).strip()
    if not s:
        return None
    try:
        return to_ist(datetime.fromisoformat(s.replace("Z", "+00:00")))
    except ValueError:
        pass
    for fmt in ("%d-%b-%Y", "%d-%b-%Y %H:%M:%S", "%d-%m-%Y", "%Y%m%d"):
        try:
            return to_ist(datetime.strptime(s, fmt))
        except ValueError:
            continue
    return None
