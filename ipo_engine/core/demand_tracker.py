from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from ipo_engine.adapters.broadcast import PRIORITY_HIGH, PRIORITY_NORMAL, BroadcastChannel
from ipo_engine.adapters.cache import CacheBackend
from ipo_engine.adapters.market_client import MarketDataClient
from ipo_engine.config import Settings, settings as default_settings
from ipo_engine.core import demand_signals as sig
from ipo_engine.core import stats
from ipo_engine.core.records import CategoryRecord
from ipo_engine.core.retry import RetryPolicy, with_retry
from ipo_engine.core.validation import overall_subscription, parse_categories
from ipo_engine.database.engine import SessionLocal
from ipo_engine.database.repo import Repo
from ipo_engine.errors import OfferingNotFoundError
from ipo_engine.utils.logs import kv
from ipo_engine.utils.time import iso, now_ist, to_ist

logger = logging.getLogger(__name__)

HIGH = "HIGH"
MEDIUM = "MEDIUM"
LOW = "LOW"
PRIORITIES = (HIGH, MEDIUM, LOW)

PRIORITY_BY_STATUS = {"open": HIGH, "upcoming": MEDIUM, "closed": LOW}
TRACKED_STATUSES = tuple(PRIORITY_BY_STATUS)

# inbox commands
OP_LIVE = "live"
OP_ADD = "add"
OP_REMOVE = "remove"
OP_FORCE = "force"
SUBMIT_OPS = (OP_ADD, OP_REMOVE, OP_FORCE)


def _insert_sample(history: deque, ts: datetime, value: float) -> None:
    """Keep ``history`` ordered by timestamp; a repeated timestamp replaces its value."""
    if not history or ts > history[-1][0]:
        history.append((ts, value))
        return
    samples = [s for s in history if s[0] != ts]
    samples.append((ts, value))
    samples.sort(key=lambda s: s[0])
    history.clear()
    # a bounded deque keeps the newest samples
    history.extend(samples)


@dataclass
class _Command:
    op: str
    offering_id: int
    payload: Any = None
    future: asyncio.Future | None = None


@dataclass
class TrackingRecord:
    offering_id: int
    symbol: str
    status: str
    priority: str
    interval_sec: int
    max_price: float
    lot_size: int
    open_date: datetime | None = None
    close_date: datetime | None = None
    listing_date: datetime | None = None

    # (timestamp, overall ratio), oldest first
    history: deque = field(default_factory=deque)
    # category -> deque of (timestamp, ratio), oldest first
    category_history: dict = field(default_factory=dict)
    category_velocity: dict = field(default_factory=dict)
    category_trends: dict = field(default_factory=dict)
    average: float = 0.0
    peak: float = 0.0
    velocity: float = 0.0
    overall: float = 0.0
    trend: dict = field(default_factory=lambda: {"direction": "insufficient_data", "slope": 0.0})
    ratios: dict = field(default_factory=dict)
    categories: list = field(default_factory=list)
    patterns: list = field(default_factory=list)
    imbalance: dict = field(default_factory=dict)
    predictions: dict = field(default_factory=dict)
    timeline: list = field(default_factory=list)
    baseline: dict = field(default_factory=dict)
    insights: list = field(default_factory=list)
    recommendations: list = field(default_factory=list)
    data_quality: int = 0
    consecutive_failures: int = 0
    dropped: bool = False
    fired_milestones: set = field(default_factory=set)
    alerts: deque = field(default_factory=deque)
    last_polled_at: datetime | None = None
    added_at: datetime = field(default_factory=now_ist)

    @property
    def lot_value(self) -> float:
        return float(self.lot_size) * float(self.max_price)

    def snapshot(self) -> dict[str, Any]:
        """Detached copy safe to hand out of the tracker."""
        return {
            "offering_id": self.offering_id,
            "symbol": self.symbol,
            "status": self.status,
            "priority": self.priority,
            "interval_sec": self.interval_sec,
            "overall_subscription": round(self.overall, 4),
            "statistics": {
                "average": round(self.average, 4),
                "peak": round(self.peak, 4),
                "velocity": round(self.velocity, 4),
                "samples": len(self.history),
            },
            "trend": dict(self.trend),
            "ratios": dict(self.ratios),
            "category_velocity": {c: round(v, 4) for c, v in self.category_velocity.items()},
            "category_trends": dict(self.category_trends),
            "categories": [dict(c) for c in self.categories],
            "imbalance": dict(self.imbalance),
            "patterns": [dict(p) for p in self.patterns],
            "predictions": dict(self.predictions),
            "timeline": [dict(t) for t in self.timeline],
            "baseline_trend": dict(self.baseline),
            "insights": [dict(i) for i in self.insights],
            "recommendations": [dict(r) for r in self.recommendations],
            "data_quality": self.data_quality,
            "consecutive_failures": self.consecutive_failures,
            "dropped": self.dropped,
            "fired_milestones": sorted(self.fired_milestones),
            "alerts": [dict(a) for a in self.alerts],
            "last_polled_at": iso(self.last_polled_at),
            "added_at": iso(self.added_at),
        }


class DemandTracker:
    """Per-offering subscription tracking on three priority queues.

    Records and queues are only mutated from the tracker's own coroutines.
    Other components hand work in through the inbox (post_live, post_tracking,
    submit), which the tracker drains on its own loop; they read copies via
    get_tracking(). Poll results are applied one at a time under a write lock.
    """

    def __init__(
        self,
        client: MarketDataClient,
        cache: CacheBackend,
        broadcast: BroadcastChannel,
        session_factory: Callable = SessionLocal,
        cfg: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
        now_fn: Callable[[], datetime] = now_ist,
    ) -> None:
        self.cfg = cfg or default_settings
        self.client = client
        self.cache = cache
        self.broadcast = broadcast
        self._session_factory = session_factory
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._now = now_fn

        self.intervals = {
            HIGH: int(self.cfg.TRACKER_HIGH_PRIORITY_SEC),
            MEDIUM: int(self.cfg.TRACKER_MEDIUM_PRIORITY_SEC),
            LOW: int(self.cfg.TRACKER_LOW_PRIORITY_SEC),
        }
        self.records: dict[int, TrackingRecord] = {}
        self.queues: dict[str, deque[int]] = {p: deque() for p in PRIORITIES}

        self.running = False
        self.started_at: datetime | None = None
        self._tasks: dict[str, asyncio.Task] = {}
        self._inbox: asyncio.Queue[_Command] = asyncio.Queue()
        self._inbox_max = max(1, int(self.cfg.TRACKER_INBOX_MAX))
        self.inbox_dropped = 0
        self._write_lock = asyncio.Lock()

        self.total_tracked = 0
        self.successful_updates = 0
        self.failed_updates = 0
        self.alerts_triggered = 0
        self.last_tracked_at: datetime | None = None
        self._latency_total_ms = 0.0
        self.last_market_trends: dict[str, Any] | None = None

    # ---------------------------
    # Tracking set
    # ---------------------------

    def _new_record(self, o: Any) -> TrackingRecord:
        priority = PRIORITY_BY_STATUS.get(o.status, LOW)
        return TrackingRecord(
            offering_id=int(o.id),
            symbol=o.symbol,
            status=o.status,
            priority=priority,
            interval_sec=self.intervals[priority],
            max_price=float(o.max_price),
            lot_size=int(o.lot_size),
            open_date=o.open_date,
            close_date=o.close_date,
            listing_date=o.listing_date,
            alerts=deque(maxlen=int(self.cfg.TRACKER_MAX_ALERTS)),
            history=deque(maxlen=int(self.cfg.TRACKER_HISTORY_LIMIT)),
        )

    def _enqueue(self, rec: TrackingRecord) -> None:
        for q in self.queues.values():
            if rec.offering_id in q:
                q.remove(rec.offering_id)
        self.queues[rec.priority].append(rec.offering_id)

    def add_tracking(self, offering_id: int) -> dict[str, Any]:
        """Start (or refresh) tracking; re-admits offerings dropped after repeated failures."""
        with self._session_factory() as s:
            o = Repo(s).offerings.get(offering_id)
            if o is None:
                raise OfferingNotFoundError(offering_id)
            rec = self.records.get(int(offering_id))
            if rec is None:
                rec = self._new_record(o)
                self.records[rec.offering_id] = rec
                self.total_tracked += 1
                self._seed_history(Repo(s), rec)
                logger.info("tracking started %s", kv(offering_id=rec.offering_id, symbol=rec.symbol, priority=rec.priority))
            else:
                rec.status = o.status
                rec.priority = PRIORITY_BY_STATUS.get(o.status, LOW)
                rec.interval_sec = self.intervals[rec.priority]
                rec.max_price = float(o.max_price)
                rec.lot_size = int(o.lot_size)
                rec.open_date, rec.close_date, rec.listing_date = o.open_date, o.close_date, o.listing_date
        rec.consecutive_failures = 0
        rec.dropped = False
        self._enqueue(rec)
        return rec.snapshot()

    def remove_tracking(self, offering_id: int) -> bool:
        rec = self.records.pop(int(offering_id), None)
        if rec is None:
            return False
        for q in self.queues.values():
            if rec.offering_id in q:
                q.remove(rec.offering_id)
        logger.info("tracking removed %s", kv(offering_id=rec.offering_id, symbol=rec.symbol))
        return True

    def get_tracking(self, offering_id: int | None = None) -> dict[str, Any] | list[dict[str, Any]] | None:
        if offering_id is None:
            return [r.snapshot() for r in self.records.values()]
        rec = self.records.get(int(offering_id))
        return rec.snapshot() if rec else None

    async def force_track(self, offering_id: int) -> dict[str, Any]:
        if int(offering_id) not in self.records:
            self.add_tracking(offering_id)
        await self.poll(int(offering_id))
        return self.records[int(offering_id)].snapshot()

    # ---------------------------
    # Inbox
    # ---------------------------

    def post_live(self, offering_id: int, categories: list[CategoryRecord], raw_count: int | None = None) -> None:
        """Hand categories fetched (and persisted) by the live-data job to the tracker."""
        if categories:
            self._post(_Command(OP_LIVE, int(offering_id), (list(categories), raw_count)))

    def post_tracking(self, offering_id: int) -> None:
        """Ask the tracker to start (or refresh) tracking an offering."""
        self._post(_Command(OP_ADD, int(offering_id)))

    def _post(self, cmd: _Command) -> None:
        if self._inbox.qsize() >= self._inbox_max:
            old = self._inbox.get_nowait()
            self.inbox_dropped += 1
            if old.future is not None and not old.future.done():
                old.future.cancel()
            logger.warning("tracker inbox full; dropped oldest %s", kv(op=old.op, offering_id=old.offering_id))
        self._inbox.put_nowait(cmd)

    def _inbox_running(self) -> bool:
        t = self._tasks.get("inbox")
        return t is not None and not t.done()

    async def submit(self, op: str, offering_id: int) -> Any:
        """Run ``op`` (add, remove, force) on the tracker and return its result.

        While the tracker loops run the command is queued and applied by the
        inbox loop; otherwise it is applied right away.
        """
        if op not in SUBMIT_OPS:
            raise ValueError(f"unsupported tracker op: {op}")
        cmd = _Command(op, int(offering_id))
        if not self._inbox_running():
            return await self._apply(cmd)
        cmd.future = asyncio.get_running_loop().create_future()
        self._post(cmd)
        return await cmd.future

    async def _apply(self, cmd: _Command) -> Any:
        if cmd.op == OP_LIVE:
            cats, raw_count = cmd.payload
            return await self.ingest_live(cmd.offering_id, cats, raw_count=raw_count)
        if cmd.op == OP_ADD:
            return self.add_tracking(cmd.offering_id)
        if cmd.op == OP_REMOVE:
            return self.remove_tracking(cmd.offering_id)
        if cmd.op == OP_FORCE:
            return await self.force_track(cmd.offering_id)
        raise ValueError(f"unsupported tracker op: {cmd.op}")

    async def _run_command(self, cmd: _Command) -> None:
        try:
            result = await self._apply(cmd)
        except Exception as e:
            if cmd.future is not None and not cmd.future.done():
                cmd.future.set_exception(e)
            else:
                logger.warning("tracker command failed %s", kv(op=cmd.op, offering_id=cmd.offering_id, error=e))
            return
        if cmd.future is not None and not cmd.future.done():
            cmd.future.set_result(result)

    async def drain_inbox(self) -> int:
        """Apply every queued command now; returns how many ran."""
        n = 0
        while not self._inbox.empty():
            await self._run_command(self._inbox.get_nowait())
            n += 1
        return n

    async def _inbox_loop(self) -> None:
        while self.running:
            cmd = await self._inbox.get()
            try:
                await self._run_command(cmd)
            except asyncio.CancelledError:
                if cmd.future is not None and not cmd.future.done():
                    cmd.future.cancel()
                raise

    def _seed_history(self, repo: Repo, rec: TrackingRecord) -> None:
        rows = repo.subscriptions.list_since(rec.offering_id, limit=int(self.cfg.TRACKER_HISTORY_LIMIT) * 8)
        by_ts: dict[datetime, float] = {}
        by_cat: dict[str, dict[datetime, float]] = {}
        for r in rows:
            ts = to_ist(r.timestamp)
            ratio = float(r.subscription_ratio)
            by_ts[ts] = max(by_ts.get(ts, 0.0), ratio)
            series = by_cat.setdefault(r.category, {})
            series[ts] = max(series.get(ts, 0.0), ratio)
        for ts in sorted(by_ts):
            rec.history.append((ts, by_ts[ts]))
        for cat, series in by_cat.items():
            hist = self._category_history(rec, cat)
            for ts in sorted(series):
                hist.append((ts, series[ts]))
        if rec.history:
            vals = [v for _, v in rec.history]
            rec.overall = vals[-1]
            rec.average = stats.mean(vals)
            rec.peak = max(vals)
            # milestones already reached before a restart do not fire again
            rec.fired_milestones.update(m for m in sig.MILESTONES if rec.peak >= m)

    def _category_history(self, rec: TrackingRecord, category: str) -> deque:
        hist = rec.category_history.get(category)
        if hist is None:
            hist = rec.category_history[category] = deque(maxlen=int(self.cfg.TRACKER_HISTORY_LIMIT))
        return hist

    def rebuild_from_store(self) -> int:
        with self._session_factory() as s:
            ids = [int(o.id) for o in Repo(s).offerings.list_active(TRACKED_STATUSES)]
        for oid in ids:
            if oid not in self.records:
                self.add_tracking(oid)
        return len(ids)

    # ---------------------------
    # Poll pipeline
    # ---------------------------

    async def poll(self, offering_id: int) -> bool:
        rec = self.records.get(int(offering_id))
        if rec is None:
            return False
        t0 = time.monotonic()
        try:
            raw = await with_retry(
                lambda: self.client.fetch_category_data(rec.symbol),
                f"fetch_category_data:{rec.symbol}",
                policy=self.retry_policy,
            )
            now = self._now()
            cats = parse_categories(raw, now)
            if not cats:
                # nothing to learn from; the record keeps its last good state
                logger.warning("no category data %s", kv(symbol=rec.symbol, raw_items=len(raw or [])))
                return False
            with self._session_factory() as s:
                Repo(s).subscriptions.append_many(rec.offering_id, cats)
                s.commit()
            await self._process(rec, cats, raw_count=len(raw or []), now=now)
        except Exception as e:
            rec.consecutive_failures += 1
            self.failed_updates += 1
            if rec.consecutive_failures > int(self.cfg.TRACKER_MAX_RETRIES):
                rec.dropped = True
                logger.error("tracking dropped after repeated failures %s", kv(symbol=rec.symbol, failures=rec.consecutive_failures, error=e))
            else:
                logger.warning("tracking poll failed %s", kv(symbol=rec.symbol, failures=rec.consecutive_failures, error=e))
            return False
        finally:
            self._latency_total_ms += (time.monotonic() - t0) * 1000.0

        rec.consecutive_failures = 0
        self.successful_updates += 1
        return True

    async def ingest_live(self, offering_id: int, categories: list[CategoryRecord], raw_count: int | None = None) -> bool:
        """Analyze categories fetched (and persisted) by the live-data job."""
        rec = self.records.get(int(offering_id))
        if rec is None or not categories:
            return False
        await self._process(rec, categories, raw_count=raw_count if raw_count is not None else len(categories), now=self._now())
        return True

    async def _process(self, rec: TrackingRecord, cats: list[CategoryRecord], raw_count: int, now: datetime) -> None:
        async with self._write_lock:
            await self._apply_categories(rec, cats, raw_count, now)

    async def _apply_categories(self, rec: TrackingRecord, cats: list[CategoryRecord], raw_count: int, now: datetime) -> None:
        ratios: dict[str, float] = {}
        cat_ts: dict[str, datetime] = {}
        details = []
        for c in cats:
            ratios[c.category] = max(ratios.get(c.category, 0.0), c.subscription_ratio)
            ts = to_ist(c.timestamp)
            cat_ts[c.category] = max(cat_ts.get(c.category, ts), ts)
            details.append({
                **c.to_dict(),
                "amount_estimate": round(c.quantity * rec.max_price, 2),
                "allotment_probability": sig.allotment_probability(c.category, c.subscription_ratio),
                "expected_lots": sig.expected_allocation(c.category, c.subscription_ratio, rec.lot_value),
            })
        overall = overall_subscription(list(ratios.values()))

        sample_ts = max(cat_ts.values(), default=to_ist(now))
        _insert_sample(rec.history, sample_ts, overall)
        for cat, ratio in ratios.items():
            _insert_sample(self._category_history(rec, cat), cat_ts.get(cat, sample_ts), ratio)
        values = [v for _, v in rec.history]

        rec.overall = overall
        rec.ratios = ratios
        rec.categories = details
        rec.average = stats.mean(values)
        rec.peak = max(values) if values else 0.0
        # overall velocity drives the rush patterns and time to full subscription
        rec.velocity = sig.velocity(rec.history)
        rec.category_velocity = {c: sig.velocity(rec.category_history[c]) for c in ratios}
        rec.category_trends = {
            c: sig.trend([v for _, v in rec.category_history[c]])["direction"] for c in ratios
        }
        rec.trend = sig.trend(values)
        rec.imbalance = sig.imbalance(ratios)
        rec.patterns = sig.detect_patterns(rec.velocity, now, rec.open_date, rec.close_date, ratios, overall)
        rec.patterns.extend(sig.rapid_growth_patterns(rec.category_velocity))
        rec.predictions = sig.predict(overall, rec.velocity, rec.close_date, now, ratios, rec.category_velocity)
        rec.data_quality = sig.data_quality_score(ratios.keys(), raw_count)
        rec.insights = sig.demand_insights(overall)
        rec.recommendations = sig.demand_recommendations(ratios, overall, rec.predictions["hours_remaining"] if rec.status == "open" else 0.0)

        with self._session_factory() as s:
            rows = Repo(s).subscriptions.list_since(rec.offering_id, since=now - timedelta(days=int(self.cfg.TRACKER_RETENTION_DAYS)))
        rec.timeline = sig.build_timeline(rows)
        rec.baseline = sig.baseline_trend([t["total"] for t in rec.timeline])

        milestones = sig.new_milestones(overall, rec.fired_milestones)
        alerts = sig.build_alerts(rec.offering_id, rec.symbol, ratios, rec.category_velocity, rec.velocity,
                                  rec.patterns, milestones, now)
        for a in alerts:
            rec.alerts.append(a)
            self.alerts_triggered += 1
            await self.broadcast.broadcast_alert(a["type"], a)

        rec.last_polled_at = now
        self.last_tracked_at = now

        snap = rec.snapshot()
        self.cache.cache_realtime("TRACKING", rec.symbol, snap)
        await self.broadcast.broadcast_update(
            "demand",
            rec.offering_id,
            {
                "symbol": rec.symbol,
                "overall_subscription": snap["overall_subscription"],
                "ratios": snap["ratios"],
                "statistics": snap["statistics"],
                "trend": snap["trend"],
                "predictions": snap["predictions"],
            },
            priority=PRIORITY_HIGH if rec.priority == HIGH else PRIORITY_NORMAL,
        )

    # ---------------------------
    # Loops
    # ---------------------------

    async def run_cycle(self, priority: str) -> int:
        """Poll one batch from the head of ``priority``'s queue; re-enqueue survivors at the back."""
        q = self.queues[priority]
        batch: list[int] = []
        while q and len(batch) < int(self.cfg.TRACKER_BATCH_SIZE):
            batch.append(q.popleft())
        for oid in batch:
            await self.poll(oid)
            rec = self.records.get(oid)
            if rec is not None and not rec.dropped and rec.priority == priority:
                q.append(oid)
            elif rec is not None and not rec.dropped:
                self._enqueue(rec)
        return len(batch)

    async def _loop(self, name: str, fn: Callable[[], Any], interval_sec: float) -> None:
        while self.running:
            try:
                res = fn()
                if asyncio.iscoroutine(res):
                    await res
            except Exception as e:
                logger.exception("tracker loop %s failed: %s", name, e)
            await asyncio.sleep(interval_sec)

    async def analyze_market(self) -> dict[str, Any]:
        entries = [(r.overall, r.ratios) for r in self.records.values() if r.history]
        trends = sig.market_trends(entries)
        trends["timestamp"] = iso(self._now())
        self.last_market_trends = trends
        await self.broadcast.broadcast_system_status({"type": "market_trends", **trends})
        return trends

    def maintenance(self, now: datetime | None = None) -> dict[str, int]:
        now = to_ist(now or self._now())
        cutoff = now - timedelta(days=int(self.cfg.TRACKER_RETENTION_DAYS))
        trimmed = 0
        for rec in self.records.values():
            while rec.history and rec.history[0][0] < cutoff:
                rec.history.popleft()
                trimmed += 1
            for hist in rec.category_history.values():
                while hist and hist[0][0] < cutoff:
                    hist.popleft()
        stale = [
            r.offering_id for r in self.records.values()
            if r.status == "listed" and r.listing_date is not None and to_ist(r.listing_date) < cutoff
        ]
        for oid in stale:
            self.remove_tracking(oid)
        if trimmed or stale:
            logger.info("tracker maintenance %s", kv(trimmed_samples=trimmed, removed=len(stale)))
        return {"trimmed_samples": trimmed, "removed": len(stale)}

    def performance(self) -> dict[str, Any]:
        polls = self.successful_updates + self.failed_updates
        return {
            "total_tracked": self.total_tracked,
            "currently_tracked": len(self.records),
            "successful_updates": self.successful_updates,
            "failed_updates": self.failed_updates,
            "success_rate": round(self.successful_updates / polls * 100.0, 2) if polls else 0.0,
            "average_latency_ms": round(self._latency_total_ms / polls, 2) if polls else 0.0,
            "alerts_triggered": self.alerts_triggered,
            "last_tracked_at": iso(self.last_tracked_at),
        }

    def _log_performance(self) -> None:
        logger.info("tracker performance %s", kv(**self.performance()))

    async def start(self) -> None:
        if self.running:
            return
        n = self.rebuild_from_store()
        self.running = True
        self.started_at = self._now()
        self._tasks["inbox"] = asyncio.create_task(self._inbox_loop())
        for p in PRIORITIES:
            self._tasks[f"priority:{p}"] = asyncio.create_task(self._loop(p, lambda p=p: self.run_cycle(p), self.intervals[p]))
        self._tasks["market_analysis"] = asyncio.create_task(
            self._loop("market_analysis", self.analyze_market, self.cfg.TRACKER_MARKET_ANALYSIS_SEC))
        self._tasks["maintenance"] = asyncio.create_task(
            self._loop("maintenance", self.maintenance, self.cfg.TRACKER_MAINTENANCE_SEC))
        self._tasks["performance"] = asyncio.create_task(
            self._loop("performance", self._log_performance, self.cfg.TRACKER_PERFORMANCE_SEC))
        logger.info("demand tracker started %s", kv(tracked=n))

    async def stop(self) -> None:
        self.running = False
        tasks = list(self._tasks.values())
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self.drain_inbox()
        logger.info("demand tracker stopped %s", kv(**self.performance()))

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "started_at": iso(self.started_at),
            "tracked": len(self.records),
            "queues": {p: len(q) for p, q in self.queues.items()},
            "intervals": dict(self.intervals),
            "dropped": [r.symbol for r in self.records.values() if r.dropped],
            "active_loops": sorted(k for k, t in self._tasks.items() if not t.done()),
            "inbox_depth": self._inbox.qsize(),
            "inbox_dropped": self.inbox_dropped,
            "performance": self.performance(),
            "market_trends": self.last_market_trends,
        }

    def health_check(self) -> dict[str, Any]:
        failing = [r for r in self.records.values() if r.consecutive_failures > 0]
        if self.records and len(failing) > len(self.records) / 2:
            status = "degraded"
        else:
            status = "healthy"
        return {"status": status, "running": self.running, "tracked": len(self.records), "failing": len(failing)}
