from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from sqlalchemy import text

from ipo_engine.adapters.broadcast import PRIORITY_HIGH, PRIORITY_NORMAL, BroadcastChannel
from ipo_engine.adapters.cache import CacheBackend
from ipo_engine.adapters.market_client import MarketDataClient
from ipo_engine.config import Settings, settings as default_settings
from ipo_engine.core import premium as gmp
from ipo_engine.core.analytics import AnalyticsEngine
from ipo_engine.core.demand_tracker import DemandTracker
from ipo_engine.core.retry import RetryPolicy, with_retry
from ipo_engine.core.retry_queue import FailedOperationQueue
from ipo_engine.core.validation import (
    has_significant_changes,
    is_status_regression,
    overall_subscription,
    parse_categories,
    parse_demand,
    parse_offering,
)
from ipo_engine.database.engine import SessionLocal
from ipo_engine.database.repo import Repo, offering_to_dict
from ipo_engine.errors import CriticalDependencyError, DataValidationError, UnknownJobError, UpstreamError
from ipo_engine.utils.logs import kv
from ipo_engine.utils.time import iso, now_ist, to_ist

logger = logging.getLogger(__name__)

JOB_OFFERING_MASTER = "offering-master"
JOB_LIVE_DATA = "live-data"
JOB_PREMIUM = "gmp"
JOB_ANALYTICS = "analytics"
JOBS = (JOB_OFFERING_MASTER, JOB_LIVE_DATA, JOB_PREMIUM, JOB_ANALYTICS)

PREMIUM_STATUSES = ("open", "upcoming", "closed")
SYSTEM_ANALYTICS_TTL_SEC = 300


@dataclass
class JobSummary:
    job: str
    processed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    validation_errors: int = 0
    errors: int = 0
    duration_ms: int = 0
    error: str | None = None
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class JobState:
    name: str
    interval_sec: int
    status: str = "idle"  # idle / running / ok / error
    runs: int = 0
    failures: int = 0
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None
    last_summary: dict | None = None

    def to_dict(self) -> dict[str, Any]:
        next_sync = self.last_run_at + timedelta(seconds=self.interval_sec) if self.last_run_at else None
        return {
            "status": self.status,
            "interval_sec": self.interval_sec,
            "runs": self.runs,
            "failures": self.failures,
            "last_sync": iso(self.last_run_at),
            "last_success": iso(self.last_success_at),
            "next_sync": iso(next_sync),
            "last_error": self.last_error,
            "last_summary": self.last_summary,
        }


class SyncOrchestrator:
    """Scheduled market-data sync.

    Four staggered job loops (offering master, live data, premium, analytics)
    plus monitoring loops. Every job runs through safe_execute, so a failing
    job is logged, recorded and queued for replay, never propagated.
    """

    def __init__(
        self,
        client: MarketDataClient,
        cache: CacheBackend,
        broadcast: BroadcastChannel,
        analytics: AnalyticsEngine,
        tracker: DemandTracker | None = None,
        session_factory: Callable = SessionLocal,
        cfg: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
        retry_queue: FailedOperationQueue | None = None,
    ) -> None:
        self.cfg = cfg or default_settings
        self.client = client
        self.cache = cache
        self.broadcast = broadcast
        self.analytics = analytics
        self.tracker = tracker
        self._session_factory = session_factory
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.retry_queue = retry_queue or FailedOperationQueue()

        self.jobs: dict[str, JobState] = {
            JOB_OFFERING_MASTER: JobState(JOB_OFFERING_MASTER, int(self.cfg.SYNC_OFFERING_MASTER_SEC)),
            JOB_LIVE_DATA: JobState(JOB_LIVE_DATA, int(self.cfg.SYNC_LIVE_DATA_SEC)),
            JOB_PREMIUM: JobState(JOB_PREMIUM, int(self.cfg.SYNC_PREMIUM_SEC)),
            JOB_ANALYTICS: JobState(JOB_ANALYTICS, int(self.cfg.SYNC_ANALYTICS_SEC)),
        }
        # one tick of a job at a time, whether from its loop, a trigger or a replay
        self._job_locks: dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in JOBS}
        self._runners: dict[str, Callable[[], Awaitable[JobSummary]]] = {
            JOB_OFFERING_MASTER: self.sync_offering_master,
            JOB_LIVE_DATA: self.sync_live_data,
            JOB_PREMIUM: self.sync_premium,
            JOB_ANALYTICS: self.sync_analytics,
        }

        self.running = False
        self.started_at: datetime | None = None
        self._tasks: dict[str, asyncio.Task] = {}
        self.last_health: dict[str, Any] | None = None
        self.integrity: dict[str, Any] = {
            "validation_failures": deque(maxlen=100),
            "stale_offerings": [],
            "missing_analytics": [],
            "repaired": 0,
            "last_check": None,
        }

        self.total_syncs = 0
        self.successful_syncs = 0
        self.failed_syncs = 0
        self.average_response_ms = 0.0
        self.data_points_processed = 0
        self.last_sync_at: datetime | None = None

    # ---------------------------
    # Job wrapper
    # ---------------------------

    def _job_lock(self, name: str) -> asyncio.Lock:
        return self._job_locks.setdefault(name, asyncio.Lock())

    async def _run_serialized(self, name: str, fn: Callable[[], Awaitable[JobSummary]]) -> JobSummary:
        async with self._job_lock(name):
            return await fn()

    async def safe_execute(self, name: str, fn: Callable[[], Awaitable[JobSummary]]) -> JobSummary:
        """Run a job; failures are recorded, broadcast and queued, never raised.

        Runs of the same job name never overlap; later callers wait for the lock.
        """
        async with self._job_lock(name):
            return await self._execute(name, fn)

    async def _execute(self, name: str, fn: Callable[[], Awaitable[JobSummary]]) -> JobSummary:
        state = self.jobs.get(name)
        t0 = time.monotonic()
        if state:
            state.status = "running"
            state.runs += 1
            state.last_run_at = now_ist()
        try:
            summary = await fn()
        except Exception as e:
            duration_ms = int((time.monotonic() - t0) * 1000)
            self._record_run(False, duration_ms, 0)
            if state:
                state.status = "error"
                state.failures += 1
                state.last_error = str(e)
            logger.error("sync job failed %s", kv(service=name, operation="sync", duration_ms=duration_ms, error=e))
            self._write_audit(name, "failed", 0, {"message": str(e), "type": type(e).__name__}, duration_ms)
            await self.broadcast.broadcast_system_status(
                {"type": "sync_error", "job": name, "error": str(e), "duration_ms": duration_ms},
                priority=PRIORITY_HIGH,
            )
            # replays take the same job lock
            self.retry_queue.enqueue(name, functools.partial(self._run_serialized, name, fn), e)
            return JobSummary(job=name, errors=1, duration_ms=duration_ms, error=str(e))

        duration_ms = int((time.monotonic() - t0) * 1000)
        summary.duration_ms = duration_ms
        self._record_run(True, duration_ms, summary.processed)
        if state:
            state.status = "ok"
            state.last_success_at = now_ist()
            state.last_error = None
            state.last_summary = summary.to_dict()
        self._write_audit(
            name,
            "success",
            summary.processed,
            {"errors": summary.errors, "validation_errors": summary.validation_errors} if summary.errors or summary.validation_errors else None,
            duration_ms,
        )
        logger.info("sync job done %s", kv(service=name, processed=summary.processed, created=summary.created,
                                            updated=summary.updated, errors=summary.errors, duration_ms=duration_ms))
        return summary

    def _write_audit(self, name: str, status: str, processed: int, errors: dict | None, duration_ms: int) -> None:
        try:
            with self._session_factory() as s:
                repo = Repo(s)
                repo.sync_logs.write(name, "sync", status, processed, errors, duration_ms)
                if status == "failed":
                    repo.system_events.write_event("SYNC_ERROR", "ERROR", {"job": name, **(errors or {})})
                s.commit()
        except Exception as e:
            # store may be the thing that is down
            logger.warning("sync log write failed %s", kv(service=name, error=e))

    def _record_run(self, ok: bool, duration_ms: int, processed: int) -> None:
        self.total_syncs += 1
        if ok:
            self.successful_syncs += 1
        else:
            self.failed_syncs += 1
        n = self.total_syncs
        self.average_response_ms = (self.average_response_ms * (n - 1) + duration_ms) / n
        self.data_points_processed += int(processed or 0)
        self.last_sync_at = now_ist()

    # ---------------------------
    # Jobs
    # ---------------------------

    async def sync_offering_master(self) -> JobSummary:
        summary = JobSummary(job=JOB_OFFERING_MASTER)
        raw_list = await with_retry(self.client.fetch_offering_master, "fetch_offering_master", policy=self.retry_policy)

        with self._session_factory() as s:
            priority = set(Repo(s).offerings.priority_symbols())
        if priority:
            # stale offerings flagged by the consistency audit go first
            raw_list = sorted(
                raw_list,
                key=lambda r: 0 if str((r or {}).get("symbol") or "").strip().upper() in priority else 1,
            )

        changed: list[dict[str, Any]] = []
        for raw in raw_list:
            summary.processed += 1
            try:
                rec = parse_offering(raw)
            except DataValidationError as e:
                summary.validation_errors += 1
                self._record_validation_failure(e)
                continue

            try:
                with self._session_factory() as s:
                    repo = Repo(s)
                    row = repo.offerings.get_by_symbol(rec.symbol)
                    if row is None:
                        row = repo.offerings.create(rec)
                        summary.created += 1
                        changed.append({"offering": offering_to_dict(row), "action": "created"})
                    else:
                        regression = is_status_regression(row.status, rec.status)
                        if regression:
                            logger.warning("status regression ignored %s", kv(symbol=rec.symbol, stored=row.status, incoming=rec.status))
                            repo.system_events.write_event(
                                "STATUS_REGRESSION", "WARN",
                                {"stored": row.status, "incoming": rec.status}, symbol=rec.symbol,
                            )
                        ignore = ("status",) if regression else ()
                        if has_significant_changes(row, rec, ignore=ignore):
                            status_changed = not regression and row.status != rec.status
                            repo.offerings.apply(row, rec, keep_status=regression)
                            summary.updated += 1
                            changed.append({"offering": offering_to_dict(row), "action": "updated",
                                            "status_changed": status_changed})
                        else:
                            repo.offerings.touch_synced(row)
                            summary.unchanged += 1
                    s.commit()
            except Exception as e:
                summary.errors += 1
                logger.error("offering upsert failed %s", kv(symbol=rec.symbol, error=e))

        for ch in changed:
            o = ch["offering"]
            self.cache.cache_offering(o["id"], o)
            self.analytics.invalidate(o["id"], o["symbol"])
            await self.broadcast.broadcast_update("offering", o["id"], {**o, "action": ch["action"]})
            if self.tracker is not None and o["status"] in ("open", "upcoming", "closed"):
                if ch["action"] == "created" or ch.get("status_changed") or o["id"] in self.tracker.records:
                    self.tracker.post_tracking(o["id"])

        if changed:
            self.refresh_offering_lists()
        summary.details = {"priority_resynced": len(priority)}
        return summary

    def _record_validation_failure(self, e: DataValidationError) -> None:
        logger.warning("offering failed validation %s", kv(symbol=e.symbol, errors=e.errors))
        self.integrity["validation_failures"].append({"symbol": e.symbol, "errors": e.errors, "at": iso(now_ist())})
        try:
            with self._session_factory() as s:
                Repo(s).system_events.write_event("DATA_QUALITY_FAILURE", "WARN", {"errors": e.errors}, symbol=e.symbol)
                s.commit()
        except Exception as ex:
            logger.warning("data quality event write failed: %s", ex)

    def refresh_offering_lists(self) -> int:
        with self._session_factory() as s:
            rows = [offering_to_dict(o) for o in Repo(s).offerings.list_active()]
        self.cache.cache_offering_list(rows)
        by_status: dict[str, list] = {}
        for o in rows:
            by_status.setdefault(o["status"], []).append(o)
        for status, items in by_status.items():
            self.cache.cache_offering_list(items, {"status": status})
        return len(rows)

    async def sync_live_data(self) -> JobSummary:
        summary = JobSummary(job=JOB_LIVE_DATA)
        with self._session_factory() as s:
            open_rows = [(int(o.id), o.symbol) for o in Repo(s).offerings.list_active(("open",))]
        if not open_rows:
            return summary

        ids = dict((sym, oid) for oid, sym in open_rows)
        batch = await self.client.batch_fetch_market_data(
            list(ids), max_concurrent=int(self.cfg.MARKET_API_MAX_CONCURRENT), policy=self.retry_policy)
        if not batch.results:
            raise UpstreamError(f"live data fetch failed for all {len(ids)} symbols: {batch.errors}")

        summary.errors = len(batch.errors)
        for sym, data in batch.results.items():
            oid = ids[sym]
            now = now_ist()
            try:
                raw_cats = data.get("categories") or []
                cats = parse_categories(raw_cats, now)
                demand = parse_demand(data.get("demand"), now)
                with self._session_factory() as s:
                    repo = Repo(s)
                    added = repo.subscriptions.append_many(oid, cats)
                    repo.demand.append_many(oid, demand)
                    s.commit()
            except Exception as e:
                summary.errors += 1
                logger.error("live data persist failed %s", kv(symbol=sym, error=e))
                continue

            summary.processed += 1
            summary.created += added + len(demand)
            sub_payload = {
                "symbol": sym,
                "total_subscription": overall_subscription(cats),
                "categories": [c.to_dict() for c in cats],
                "timestamp": iso(now),
            }
            demand_payload = {
                "symbol": sym,
                "total_demand": sum(d.quantity for d in demand),
                "points": [d.to_dict() for d in demand],
                "timestamp": iso(now),
            }
            self.cache.cache_realtime("SUBSCRIPTION", sym, sub_payload)
            self.cache.cache_realtime("DEMAND", sym, demand_payload)
            await self.broadcast.broadcast_update("subscription", oid, sub_payload)
            await self.broadcast.broadcast_update("demand", oid, demand_payload)
            if self.tracker is not None:
                self.tracker.post_live(oid, cats, raw_count=len(raw_cats))
        return summary

    async def sync_premium(self) -> JobSummary:
        summary = JobSummary(job=JOB_PREMIUM)
        sources = self.cfg.premium_sources()
        with self._session_factory() as s:
            rows = [(int(o.id), o.symbol, float(o.max_price)) for o in Repo(s).offerings.list_active(PREMIUM_STATUSES)]

        for oid, sym, max_price in rows:
            try:
                quotes = await gmp.fetch_quotes(self.client, sym, sources, max_price, policy=self.retry_policy)
                agg = gmp.weighted_premium(quotes)
                if agg is None:
                    continue
                with self._session_factory() as s:
                    repo = Repo(s)
                    prev = repo.premium_quotes.latest(oid)
                    change = gmp.premium_change(agg["value"], float(prev.value) if prev else None)
                    repo.premium_quotes.append(oid, agg, ts=agg["timestamp"])
                    s.commit()
                    recent = [float(q.value) for q in repo.premium_quotes.list_since(oid, limit=5)]
            except Exception as e:
                summary.errors += 1
                logger.error("premium sync failed %s", kv(symbol=sym, error=e))
                continue

            summary.processed += 1
            summary.created += 1
            payload = {**agg, "timestamp": iso(agg["timestamp"]), "symbol": sym, "change": change,
                       "trend": gmp.premium_trend(recent)}
            self.cache.cache_realtime("GMP", sym, payload)
            await self.broadcast.broadcast_update("gmp", oid, payload)
        return summary

    async def sync_analytics(self, offering_id: int | None = None) -> JobSummary:
        summary = JobSummary(job=JOB_ANALYTICS)
        if offering_id is not None:
            ids = [int(offering_id)]
        else:
            with self._session_factory() as s:
                ids = [int(o.id) for o in Repo(s).offerings.list_active()]

        size = max(1, int(self.cfg.SYNC_ANALYTICS_BATCH_SIZE))
        for i in range(0, len(ids), size):
            for oid in ids[i:i + size]:
                try:
                    snap = self.analytics.refresh(oid)
                except Exception as e:
                    summary.errors += 1
                    logger.error("analytics refresh failed %s", kv(offering_id=oid, error=e))
                    continue
                summary.processed += 1
                summary.updated += 1
                await self.broadcast.broadcast_update("analytics", oid, {
                    "symbol": snap.get("symbol"),
                    "version": snap.get("version"),
                    "risk": snap.get("risk"),
                    "predictions": snap.get("predictions"),
                    "stale": bool(snap.get("stale")),
                })
            if i + size < len(ids):
                await asyncio.sleep(self.cfg.SYNC_ANALYTICS_BATCH_PAUSE_MS / 1000.0)

        if offering_id is None:
            summary.details = {"system": self.compute_system_analytics()}
        return summary

    def compute_system_analytics(self) -> dict[str, Any]:
        with self._session_factory() as s:
            repo = Repo(s)
            data = {
                "offerings": {
                    "active": repo.offerings.count(),
                    "open": repo.offerings.count("open"),
                    "upcoming": repo.offerings.count("upcoming"),
                    "listed": repo.offerings.count("listed"),
                },
                "premium_quotes": repo.premium_quotes.count(),
                "subscription_records": repo.subscriptions.count(),
            }
        data["sync_performance"] = self.performance()
        data["computed_at"] = iso(now_ist())
        self.cache.set(self.cache.key("system", "analytics"), data, SYSTEM_ANALYTICS_TTL_SEC)
        return data

    # ---------------------------
    # Monitoring
    # ---------------------------

    async def health_check(self) -> dict[str, Any]:
        components: dict[str, dict[str, Any]] = {}

        t0 = time.monotonic()
        try:
            with self._session_factory() as s:
                s.execute(text("SELECT 1"))
            components["store"] = {"status": "healthy", "latency_ms": int((time.monotonic() - t0) * 1000)}
        except Exception as e:
            components["store"] = {"status": "unhealthy", "error": str(e)}

        try:
            components["market_client"] = await self.client.health_check()
        except Exception as e:
            components["market_client"] = {"status": "unhealthy", "error": str(e)}

        components["cache"] = self.cache.health_check()
        components["broadcast"] = self.broadcast.health_check()
        if self.tracker is not None:
            components["tracker"] = self.tracker.health_check()

        critical = [n for n in ("store", "market_client") if components[n].get("status") != "healthy"]
        degraded = [n for n, c in components.items() if n not in critical and c.get("status") != "healthy"]
        overall = "critical" if critical else "degraded" if degraded else "healthy"

        report = {
            "status": overall,
            "components": components,
            "critical": critical,
            "degraded": degraded,
            "checked_at": iso(now_ist()),
        }
        self.last_health = report
        if overall != "healthy":
            logger.warning("health check %s", kv(status=overall, critical=critical or None, degraded=degraded or None))
            try:
                with self._session_factory() as s:
                    Repo(s).system_events.write_event(
                        "HEALTH_DEGRADED", "CRITICAL" if critical else "WARN", {"critical": critical, "degraded": degraded})
                    s.commit()
            except Exception as e:
                logger.warning("health event write failed: %s", e)
        await self.broadcast.broadcast_system_status(
            {"type": "health_check", "status": overall, "critical": critical, "degraded": degraded,
             "metrics": self.performance()},
            priority=PRIORITY_NORMAL if overall == "healthy" else PRIORITY_HIGH,
        )
        return report

    async def process_failed_operations(self) -> dict[str, Any]:
        res = await self.retry_queue.process()
        return {"recovered": res.recovered, "failed": res.failed, "dropped": res.dropped,
                "remaining": len(self.retry_queue)}

    async def consistency_check(self) -> dict[str, Any]:
        cutoff = now_ist() - timedelta(seconds=int(self.cfg.SYNC_STALE_AFTER_SEC))
        with self._session_factory() as s:
            repo = Repo(s)
            stale = repo.offerings.list_stale(cutoff)
            stale_syms = [o.symbol for o in stale]
            repo.offerings.mark_priority_resync([int(o.id) for o in stale])
            missing = [(int(o.id), o.symbol) for o in repo.offerings.list_without_analytics()]
            if stale or missing:
                repo.system_events.write_event(
                    "CONSISTENCY_ISSUE", "WARN",
                    {"stale_offerings": stale_syms, "missing_analytics": [m[1] for m in missing]},
                )
            s.commit()

        repaired = 0
        if self.cfg.SYNC_AUTO_REPAIR:
            for oid, sym in missing:
                try:
                    self.analytics.refresh(oid)
                    repaired += 1
                except Exception as e:
                    logger.warning("analytics repair failed %s", kv(symbol=sym, error=e))

        self.integrity["stale_offerings"] = stale_syms
        self.integrity["missing_analytics"] = [m[1] for m in missing]
        self.integrity["repaired"] = int(self.integrity["repaired"]) + repaired
        self.integrity["last_check"] = iso(now_ist())
        report = {
            "stale_offerings": stale_syms,
            "missing_analytics": [m[1] for m in missing],
            "repaired": repaired,
        }
        if stale_syms or missing:
            logger.warning("consistency issues %s", kv(stale=len(stale_syms), missing_analytics=len(missing), repaired=repaired))
            await self.broadcast.broadcast_system_status({"type": "consistency_check", **report})
        return report

    def cleanup(self) -> dict[str, int]:
        pruned = self.retry_queue.prune_older_than()
        local = self.analytics.prune_local()
        if pruned or local:
            logger.info("cleanup %s", kv(failed_ops_pruned=pruned, analytics_entries_pruned=local))
        return {"failed_ops_pruned": pruned, "analytics_entries_pruned": local}

    # ---------------------------
    # Manual trigger / status
    # ---------------------------

    async def trigger_sync(self, job: str, options: dict | None = None) -> dict[str, Any]:
        options = options or {}
        if job == JOB_ANALYTICS and options.get("offering_id") is not None:
            oid = int(options["offering_id"])
            summary = await self.safe_execute(job, lambda: self.sync_analytics(oid))
            return {"job": job, "summary": summary.to_dict()}
        if job in self._runners:
            summary = await self.safe_execute(job, self._runners[job])
            return {"job": job, "summary": summary.to_dict()}
        if job == "all":
            results = await asyncio.gather(*(self.safe_execute(j, self._runners[j]) for j in JOBS))
            return {
                "job": "all",
                "results": {
                    r.job: {"status": "failed" if r.error else "ok", "summary": r.to_dict()} for r in results
                },
            }
        if job == "failed-operations":
            return {"job": job, "result": await self.process_failed_operations()}
        if job == "consistency-check":
            return {"job": job, "result": await self.consistency_check()}
        raise UnknownJobError(job)

    def performance(self) -> dict[str, Any]:
        n = self.total_syncs
        return {
            "total_syncs": n,
            "successful_syncs": self.successful_syncs,
            "failed_syncs": self.failed_syncs,
            "success_rate": round(self.successful_syncs / n * 100.0, 2) if n else 0.0,
            "error_rate": round(self.failed_syncs / n * 100.0, 2) if n else 0.0,
            "average_response_ms": round(self.average_response_ms, 2),
            "data_points_processed": self.data_points_processed,
            "last_sync_at": iso(self.last_sync_at),
            "uptime_sec": self.uptime_sec(),
        }

    def uptime_sec(self) -> int:
        if self.started_at is None:
            return 0
        return int((now_ist() - to_ist(self.started_at)).total_seconds())

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "started_at": iso(self.started_at),
            "uptime_sec": self.uptime_sec(),
            "jobs": {name: st.to_dict() for name, st in self.jobs.items()},
            "performance": self.performance(),
            "active_loops": sorted(k for k, t in self._tasks.items() if not t.done()),
            "retry_queue": self.retry_queue.stats(),
            "data_integrity": {**self.integrity, "validation_failures": list(self.integrity["validation_failures"])},
            "last_health_check": self.last_health,
            "analytics": self.analytics.metrics(),
        }

    # ---------------------------
    # Lifecycle
    # ---------------------------

    async def initial_sync(self) -> dict[str, Any]:
        results = {}
        for job in JOBS:
            s = await self.safe_execute(job, self._runners[job])
            results[job] = "failed" if s.error else "ok"
        await self.broadcast.broadcast_system_status({"type": "initial_sync_complete", "results": results})
        return results

    async def _job_loop(self, name: str, interval_sec: float, first_delay: float) -> None:
        await asyncio.sleep(first_delay)
        while self.running:
            await self.safe_execute(name, self._runners[name])
            await asyncio.sleep(interval_sec)

    async def _monitor_loop(self, name: str, fn: Callable[[], Any], interval_sec: float) -> None:
        while self.running:
            await asyncio.sleep(interval_sec)
            try:
                res = fn()
                if asyncio.iscoroutine(res):
                    await res
            except Exception as e:
                logger.exception("monitor loop %s failed: %s", name, e)

    async def start(self) -> None:
        """Health gate, optional initial sync, then spawn the loops.

        Raises CriticalDependencyError when the store or the market client is down.
        """
        if self.running:
            return
        report = await self.health_check()
        if report["status"] == "critical":
            raise CriticalDependencyError(
                f"critical dependencies unavailable: {', '.join(report['critical'])}", failed=report["critical"])

        self.running = True
        self.started_at = now_ist()
        ran_initial = False
        if self.cfg.SYNC_INITIAL_RUN:
            await self.initial_sync()
            ran_initial = True

        offsets = self.cfg.stagger_offsets()
        for i, job in enumerate(JOBS):
            offset = offsets[i] if i < len(offsets) else 0.0
            interval = self.jobs[job].interval_sec
            # after an initial run the first loop tick waits a full interval
            first = offset + (interval if ran_initial else 0)
            self._tasks[job] = asyncio.create_task(self._job_loop(job, interval, first))

        self._tasks["health"] = asyncio.create_task(
            self._monitor_loop("health", self.health_check, self.cfg.SYNC_HEALTH_CHECK_SEC))
        self._tasks["failed-operations"] = asyncio.create_task(
            self._monitor_loop("failed-operations", self.process_failed_operations, self.cfg.SYNC_FAILED_OPS_SEC))
        self._tasks["consistency"] = asyncio.create_task(
            self._monitor_loop("consistency", self.consistency_check, self.cfg.SYNC_CONSISTENCY_SEC))
        self._tasks["cleanup"] = asyncio.create_task(
            self._monitor_loop("cleanup", self.cleanup, self.cfg.SYNC_CLEANUP_SEC))
        logger.info("sync orchestrator started %s", kv(loops=len(self._tasks), initial_sync=ran_initial))

    async def stop(self) -> None:
        """Cancel loops, drain the retry queue once, broadcast final metrics."""
        self.running = False
        tasks = list(self._tasks.values())
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        drained = None
        if len(self.retry_queue):
            try:
                drained = await self.process_failed_operations()
            except Exception as e:
                logger.warning("retry queue drain failed: %s", e)

        await self.broadcast.broadcast_system_status(
            {"type": "sync_service_shutdown", "metrics": self.performance(), "drained": drained},
            priority=PRIORITY_HIGH,
        )
        logger.info("sync orchestrator stopped %s", kv(**self.performance()))
