from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ipo_engine.core.records import CategoryRecord, DemandPoint, OfferingRecord
from ipo_engine.database import models
from ipo_engine.utils.time import iso, now_ist, to_ist


def offering_to_dict(o: models.Offering) -> dict[str, Any]:
    return {
        "id": int(o.id),
        "symbol": o.symbol,
        "name": o.name,
        "status": o.status,
        "issue_type": o.issue_type,
        "sector": o.sector,
        "registrar": o.registrar,
        "min_price": float(o.min_price),
        "max_price": float(o.max_price),
        "lot_size": int(o.lot_size),
        "face_value": o.face_value,
        "issue_size": int(o.issue_size or 0),
        "open_date": iso(o.open_date),
        "close_date": iso(o.close_date),
        "listing_date": iso(o.listing_date),
        "is_active": bool(o.is_active),
        "last_sync_at": iso(o.last_sync_at),
    }


@dataclass
class SystemEventsRepo:
    s: Session

    def write_event(
        self,
        event_type: str,
        severity: str,
        payload: dict,
        symbol: str | None = None,
    ) -> None:
        self.s.add(
            models.SystemEvent(
                event_type=event_type,
                severity=severity,
                symbol=symbol,
                payload=payload,
                time=now_ist(),
            )
        )

    def recent(self, event_type: str | None = None, limit: int = 50) -> list[models.SystemEvent]:
        q = select(models.SystemEvent)
        if event_type:
            q = q.where(models.SystemEvent.event_type == event_type)
        q = q.order_by(models.SystemEvent.id.desc()).limit(limit)
        return list(self.s.execute(q).scalars().all())


@dataclass
class OfferingsRepo:
    s: Session

    def get(self, offering_id: int) -> models.Offering | None:
        return self.s.get(models.Offering, int(offering_id))

    def get_by_symbol(self, symbol: str) -> models.Offering | None:
        return self.s.execute(
            select(models.Offering).where(models.Offering.symbol == symbol.strip().upper())
        ).scalar_one_or_none()

    def list_active(self, statuses: Iterable[str] | None = None) -> list[models.Offering]:
        q = select(models.Offering).where(models.Offering.is_active.is_(True))
        if statuses is not None:
            q = q.where(models.Offering.status.in_(list(statuses)))
        return list(self.s.execute(q.order_by(models.Offering.id.asc())).scalars().all())

    def create(self, rec: OfferingRecord) -> models.Offering:
        now = now_ist()
        row = models.Offering(**rec.column_values(), is_active=True, created_at=now, updated_at=now, last_sync_at=now)
        self.s.add(row)
        self.s.flush()
        return row

    def apply(self, row: models.Offering, rec: OfferingRecord, keep_status: bool = False) -> None:
        values = rec.column_values()
        values.pop("symbol")  # identity never changes
        if keep_status:
            values.pop("status")
        for k, v in values.items():
            setattr(row, k, v)
        now = now_ist()
        row.updated_at = now
        row.last_sync_at = now
        row.priority_resync = False

    def touch_synced(self, row: models.Offering) -> None:
        row.last_sync_at = now_ist()
        row.priority_resync = False

    def list_stale(self, before: datetime) -> list[models.Offering]:
        q = (
            select(models.Offering)
            .where(models.Offering.is_active.is_(True))
            .where((models.Offering.last_sync_at.is_(None)) | (models.Offering.last_sync_at < before))
        )
        return list(self.s.execute(q).scalars().all())

    def list_without_analytics(self) -> list[models.Offering]:
        q = (
            select(models.Offering)
            .outerjoin(models.AnalyticsSnapshot, models.AnalyticsSnapshot.offering_id == models.Offering.id)
            .where(models.Offering.is_active.is_(True))
            .where(models.AnalyticsSnapshot.id.is_(None))
        )
        return list(self.s.execute(q).scalars().all())

    def mark_priority_resync(self, ids: list[int]) -> None:
        if not ids:
            return
        self.s.execute(
            update(models.Offering).where(models.Offering.id.in_(ids)).values(priority_resync=True)
        )

    def priority_symbols(self) -> list[str]:
        q = select(models.Offering.symbol).where(models.Offering.priority_resync.is_(True))
        return [str(x) for x in self.s.execute(q).scalars().all()]

    def count(self, status: str | None = None) -> int:
        q = select(func.count(models.Offering.id)).where(models.Offering.is_active.is_(True))
        if status:
            q = q.where(models.Offering.status == status)
        return int(self.s.execute(q).scalar_one() or 0)


@dataclass
class PremiumQuotesRepo:
    s: Session

    def append(self, offering_id: int, quote: dict[str, Any], ts: datetime | None = None) -> models.PremiumQuote:
        now = now_ist()
        row = models.PremiumQuote(
            offering_id=int(offering_id),
            value=float(quote["value"]),
            percentage=float(quote.get("percentage") or 0.0),
            volume=int(quote.get("volume") or 0),
            bid_price=quote.get("bid_price"),
            ask_price=quote.get("ask_price"),
            reliability=quote.get("reliability"),
            source=str(quote.get("source") or "aggregated"),
            timestamp=ts or now,
            created_at=now,
        )
        self.s.add(row)
        return row

    def latest(self, offering_id: int) -> models.PremiumQuote | None:
        q = (
            select(models.PremiumQuote)
            .where(models.PremiumQuote.offering_id == int(offering_id))
            .order_by(models.PremiumQuote.timestamp.desc(), models.PremiumQuote.id.desc())
            .limit(1)
        )
        return self.s.execute(q).scalar_one_or_none()

    def list_since(self, offering_id: int, since: datetime | None = None, limit: int = 100) -> list[models.PremiumQuote]:
        """Newest first."""
        q = select(models.PremiumQuote).where(models.PremiumQuote.offering_id == int(offering_id))
        if since is not None:
            q = q.where(models.PremiumQuote.timestamp >= since)
        q = q.order_by(models.PremiumQuote.timestamp.desc(), models.PremiumQuote.id.desc()).limit(limit)
        return list(self.s.execute(q).scalars().all())

    def count(self) -> int:
        return int(self.s.execute(select(func.count(models.PremiumQuote.id))).scalar_one() or 0)


@dataclass
class SubscriptionsRepo:
    s: Session

    def append_many(self, offering_id: int, records: list[CategoryRecord]) -> int:
        """Append samples, skipping exact (category, sub_category, timestamp) duplicates."""
        if not records:
            return 0
        existing = set(
            (c, sc, to_ist(ts))
            for c, sc, ts in self.s.execute(
                select(
                    models.SubscriptionRecord.category,
                    models.SubscriptionRecord.sub_category,
                    models.SubscriptionRecord.timestamp,
                ).where(
                    models.SubscriptionRecord.offering_id == int(offering_id),
                    models.SubscriptionRecord.timestamp >= min(r.timestamp for r in records),
                )
            ).all()
        )
        now = now_ist()
        added = 0
        for r in records:
            k = (r.category, r.sub_category, to_ist(r.timestamp))
            if k in existing:
                continue
            existing.add(k)
            self.s.add(
                models.SubscriptionRecord(
                    offering_id=int(offering_id),
                    category=r.category,
                    sub_category=r.sub_category,
                    quantity=int(r.quantity),
                    bid_count=int(r.bid_count),
                    subscription_ratio=float(r.subscription_ratio),
                    timestamp=r.timestamp,
                    created_at=now,
                )
            )
            added += 1
        return added

    def list_since(self, offering_id: int, since: datetime | None = None, limit: int = 500) -> list[models.SubscriptionRecord]:
        """Newest first."""
        q = select(models.SubscriptionRecord).where(models.SubscriptionRecord.offering_id == int(offering_id))
        if since is not None:
            q = q.where(models.SubscriptionRecord.timestamp >= since)
        q = q.order_by(models.SubscriptionRecord.timestamp.desc(), models.SubscriptionRecord.id.desc()).limit(limit)
        return list(self.s.execute(q).scalars().all())

    def count(self) -> int:
        return int(self.s.execute(select(func.count(models.SubscriptionRecord.id))).scalar_one() or 0)


@dataclass
class DemandRepo:
    s: Session

    def append_many(self, offering_id: int, points: list[DemandPoint]) -> int:
        now = now_ist()
        for p in points:
            self.s.add(
                models.DemandRecord(
                    offering_id=int(offering_id),
                    price=p.price,
                    cutoff=bool(p.cutoff),
                    quantity=int(p.quantity),
                    bid_count=int(p.bid_count),
                    timestamp=p.timestamp,
                    created_at=now,
                )
            )
        return len(points)

    def list_since(self, offering_id: int, since: datetime | None = None, limit: int = 50) -> list[models.DemandRecord]:
        q = select(models.DemandRecord).where(models.DemandRecord.offering_id == int(offering_id))
        if since is not None:
            q = q.where(models.DemandRecord.timestamp >= since)
        q = q.order_by(models.DemandRecord.timestamp.desc(), models.DemandRecord.id.desc()).limit(limit)
        return list(self.s.execute(q).scalars().all())


@dataclass
class AnalyticsRepo:
    s: Session

    def get(self, offering_id: int) -> models.AnalyticsSnapshot | None:
        return self.s.execute(
            select(models.AnalyticsSnapshot).where(models.AnalyticsSnapshot.offering_id == int(offering_id))
        ).scalar_one_or_none()

    def upsert(self, offering_id: int, columns: dict[str, Any], payload: dict[str, Any]) -> models.AnalyticsSnapshot:
        """Replace the snapshot wholesale and bump its version."""
        now = now_ist()
        row = self.get(offering_id)
        if row is None:
            row = models.AnalyticsSnapshot(offering_id=int(offering_id), version=1, computed_at=now, updated_at=now, payload={})
            self.s.add(row)
        else:
            row.version = int(row.version or 0) + 1
        for k, v in columns.items():
            setattr(row, k, v)
        row.payload = payload
        row.computed_at = now
        row.updated_at = now
        self.s.flush()
        return row


@dataclass
class SyncLogRepo:
    s: Session

    def write(
        self,
        service: str,
        operation: str,
        status: str,
        records_processed: int = 0,
        errors: dict | None = None,
        duration_ms: int | None = None,
    ) -> None:
        self.s.add(
            models.SyncLog(
                service=service,
                operation=operation,
                status=status,
                records_processed=int(records_processed or 0),
                errors=errors,
                duration_ms=duration_ms,
                created_at=now_ist(),
            )
        )

    def recent(self, service: str | None = None, limit: int = 20) -> list[models.SyncLog]:
        q = select(models.SyncLog)
        if service:
            q = q.where(models.SyncLog.service == service)
        return list(self.s.execute(q.order_by(models.SyncLog.id.desc()).limit(limit)).scalars().all())


@dataclass
class Repo:
    s: Session

    @property
    def system_events(self) -> SystemEventsRepo:
        return SystemEventsRepo(self.s)

    @property
    def offerings(self) -> OfferingsRepo:
        return OfferingsRepo(self.s)

    @property
    def premium_quotes(self) -> PremiumQuotesRepo:
        return PremiumQuotesRepo(self.s)

    @property
    def subscriptions(self) -> SubscriptionsRepo:
        return SubscriptionsRepo(self.s)

    @property
    def demand(self) -> DemandRepo:
        return DemandRepo(self.s)

    @property
    def analytics(self) -> AnalyticsRepo:
        return AnalyticsRepo(self.s)

    @property
    def sync_logs(self) -> SyncLogRepo:
        return SyncLogRepo(self.s)
