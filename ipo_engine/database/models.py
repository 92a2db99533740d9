from __future__ import annotations

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    BigInteger,
    String,
    UniqueConstraint,
)
from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# IMPORTANT (SQLite autoincrement):
# SQLite only auto-increments when the PRIMARY KEY column is exactly "INTEGER PRIMARY KEY".
# Using BIGINT for an autoincrement PK will NOT bind to rowid and will fail inserts (id stays NULL).
AUTO_PK = Integer().with_variant(BigInteger, "postgresql")


# ---------------------------
# Offerings (master data)
# ---------------------------

class Offering(Base):
    __tablename__ = "offerings"

    id = Column(AUTO_PK, primary_key=True, autoincrement=True)
    symbol = Column(String(32), nullable=False, unique=True)
    name = Column(String(256), nullable=False)

    # upcoming / open / closed / listed / withdrawn / cancelled
    status = Column(String(16), nullable=False, default="upcoming")
    issue_type = Column(String(32), nullable=True)
    sector = Column(String(64), nullable=True)
    registrar = Column(String(128), nullable=True)

    min_price = Column(Float, nullable=False)
    max_price = Column(Float, nullable=False)
    lot_size = Column(Integer, nullable=False)
    face_value = Column(Float, nullable=True)
    issue_size = Column(BigInteger, nullable=False, default=0)

    open_date = Column(DateTime(timezone=True), nullable=False)
    close_date = Column(DateTime(timezone=True), nullable=False)
    listing_date = Column(DateTime(timezone=True), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    # set by consistency audit; consumed by next master sync
    priority_resync = Column(Boolean, nullable=False, default=False)

    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    analytics = relationship("AnalyticsSnapshot", uselist=False, back_populates="offering")

    __table_args__ = (
        CheckConstraint("min_price <= max_price", name="ck_offerings_price_band"),
        CheckConstraint("lot_size > 0", name="ck_offerings_lot_size_positive"),
        Index("ix_offerings_status_active", "status", "is_active"),
    )


# ---------------------------
# Time series (append-only)
# ---------------------------

class PremiumQuote(Base):
    __tablename__ = "premium_quotes"

    id = Column(AUTO_PK, primary_key=True, autoincrement=True)
    offering_id = Column(Integer, ForeignKey("offerings.id", ondelete="CASCADE"), nullable=False)

    value = Column(Float, nullable=False)
    percentage = Column(Float, nullable=False, default=0.0)
    volume = Column(Integer, nullable=True)
    bid_price = Column(Float, nullable=True)
    ask_price = Column(Float, nullable=True)
    reliability = Column(Float, nullable=True)
    source = Column(String(32), nullable=False)  # market / broker / portal / aggregator / aggregated

    timestamp = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_premium_offering_ts", "offering_id", "timestamp"),
    )


class SubscriptionRecord(Base):
    __tablename__ = "subscription_records"

    id = Column(AUTO_PK, primary_key=True, autoincrement=True)
    offering_id = Column(Integer, ForeignKey("offerings.id", ondelete="CASCADE"), nullable=False)

    category = Column(String(16), nullable=False)  # RETAIL / QIB / NIB / EMPLOYEE / ANCHOR
    sub_category = Column(String(16), nullable=True)
    quantity = Column(BigInteger, nullable=False, default=0)
    bid_count = Column(Integer, nullable=False, default=0)
    subscription_ratio = Column(Float, nullable=False, default=0.0)

    timestamp = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("subscription_ratio >= 0", name="ck_subscription_ratio_non_negative"),
        UniqueConstraint("offering_id", "category", "sub_category", "timestamp", name="uq_subscription_sample"),
        Index("ix_subscription_offering_ts", "offering_id", "timestamp"),
    )


class DemandRecord(Base):
    __tablename__ = "demand_records"

    id = Column(AUTO_PK, primary_key=True, autoincrement=True)
    offering_id = Column(Integer, ForeignKey("offerings.id", ondelete="CASCADE"), nullable=False)

    price = Column(Float, nullable=True)
    cutoff = Column(Boolean, nullable=False, default=False)
    quantity = Column(BigInteger, nullable=False, default=0)
    bid_count = Column(Integer, nullable=False, default=0)

    timestamp = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_demand_offering_ts", "offering_id", "timestamp"),
    )


# ---------------------------
# Derived data
# ---------------------------

class AnalyticsSnapshot(Base):
    __tablename__ = "analytics_snapshots"

    id = Column(AUTO_PK, primary_key=True, autoincrement=True)
    offering_id = Column(Integer, ForeignKey("offerings.id", ondelete="CASCADE"), nullable=False, unique=True)

    # bumps on every recomputation; the payload is replaced, never merged
    version = Column(Integer, nullable=False, default=1)

    total_premium_changes = Column(Integer, nullable=False, default=0)
    avg_premium = Column(Float, nullable=True)
    max_premium = Column(Float, nullable=True)
    min_premium = Column(Float, nullable=True)
    premium_volatility = Column(Float, nullable=True)

    overall_subscription = Column(Float, nullable=True)
    retail_subscription = Column(Float, nullable=True)
    qib_subscription = Column(Float, nullable=True)
    nib_subscription = Column(Float, nullable=True)

    predicted_listing_gain = Column(Float, nullable=True)
    allotment_probability = Column(Float, nullable=True)
    risk_score = Column(Float, nullable=True)

    payload = Column(JSON, nullable=False, default=dict)

    computed_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    offering = relationship("Offering", back_populates="analytics")

    __table_args__ = (
        CheckConstraint("(risk_score IS NULL) OR (risk_score >= 0 AND risk_score <= 100)", name="ck_analytics_risk_range"),
    )


# ---------------------------
# Audit: sync logs + system events
# ---------------------------

class SyncLog(Base):
    __tablename__ = "sync_logs"

    id = Column(AUTO_PK, primary_key=True, autoincrement=True)
    service = Column(String(32), nullable=False)  # offering-master / live-data / gmp / analytics
    operation = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False)  # success / failed
    records_processed = Column(Integer, nullable=False, default=0)
    errors = Column(JSON, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_sync_logs_service_created", "service", "created_at"),
    )


class SystemEvent(Base):
    __tablename__ = "system_events"

    id = Column(AUTO_PK, primary_key=True, autoincrement=True)
    event_type = Column(String(64), nullable=False)
    severity = Column(String(16), nullable=False)  # INFO / WARN / ERROR / CRITICAL
    symbol = Column(String(32), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    time = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_system_events_type_time", "event_type", "time"),
    )
