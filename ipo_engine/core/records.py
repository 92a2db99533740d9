"""Typed ingestion records.

Upstream payloads are loosely shaped dicts; everything past the ingestion
boundary works with these frozen dataclasses instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ipo_engine.utils.time import iso

OFFERING_STATUSES = ("upcoming", "open", "closed", "listed", "withdrawn", "cancelled")


@dataclass(frozen=True)
class CategoryConfig:
    code: str
    weight: float
    max_allocation: float
    sub_categories: tuple[str, ...] = ()


CATEGORIES: dict[str, CategoryConfig] = {
    "RETAIL": CategoryConfig("RETAIL", 0.35, 35.0, ("IND", "INDIV")),
    "QIB": CategoryConfig("QIB", 0.5, 50.0, ("FII", "MF", "IC", "DI")),
    "NIB": CategoryConfig("NIB", 0.15, 15.0),
    "EMPLOYEE": CategoryConfig("EMPLOYEE", 0.05, 5.0),
    "ANCHOR": CategoryConfig("ANCHOR", 0.3, 30.0),
}


@dataclass(frozen=True)
class OfferingRecord:
    symbol: str
    name: str
    status: str
    min_price: float
    max_price: float
    lot_size: int
    open_date: datetime
    close_date: datetime
    issue_size: int = 0
    listing_date: datetime | None = None
    issue_type: str | None = None
    sector: str | None = None
    registrar: str | None = None
    face_value: float | None = None
    categories: tuple[dict[str, Any], ...] = field(default=(), compare=False)

    @property
    def lot_value(self) -> float:
        return float(self.lot_size) * float(self.max_price)

    def column_values(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "status": self.status,
            "min_price": self.min_price,
            "max_price": self.max_price,
            "lot_size": self.lot_size,
            "issue_size": self.issue_size,
            "open_date": self.open_date,
            "close_date": self.close_date,
            "listing_date": self.listing_date,
            "issue_type": self.issue_type,
            "sector": self.sector,
            "registrar": self.registrar,
            "face_value": self.face_value,
        }

    def to_dict(self) -> dict[str, Any]:
        d = self.column_values()
        for k in ("open_date", "close_date", "listing_date"):
            d[k] = iso(d[k])
        return d


@dataclass(frozen=True)
class CategoryRecord:
    category: str
    sub_category: str | None
    quantity: int
    bid_count: int
    subscription_ratio: float
    timestamp: datetime

    @property
    def key(self) -> str:
        return f"{self.category}_{self.sub_category}" if self.sub_category else self.category

    @property
    def average_bid_size(self) -> float:
        return self.quantity / self.bid_count if self.bid_count > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "sub_category": self.sub_category,
            "quantity": self.quantity,
            "bid_count": self.bid_count,
            "subscription_ratio": self.subscription_ratio,
            "average_bid_size": round(self.average_bid_size, 2),
            "timestamp": iso(self.timestamp),
        }


@dataclass(frozen=True)
class PremiumQuoteRecord:
    source: str
    value: float
    percentage: float
    volume: int
    bid_price: float | None
    ask_price: float | None
    reliability: float
    timestamp: datetime


@dataclass(frozen=True)
class DemandPoint:
    price: float | None
    cutoff: bool
    quantity: int
    bid_count: int
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "price": self.price,
            "cutoff": self.cutoff,
            "quantity": self.quantity,
            "bid_count": self.bid_count,
            "timestamp": iso(self.timestamp),
        }
