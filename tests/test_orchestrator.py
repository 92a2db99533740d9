"""Tests for the sync orchestrator."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from conftest import category_rows, make_offering, messages
from ipo_engine.core.orchestrator import (
    JOB_ANALYTICS,
    JOB_LIVE_DATA,
    JOB_OFFERING_MASTER,
    JOB_PREMIUM,
    JOBS,
    JobSummary,
)
from ipo_engine.database import models
from ipo_engine.database.repo import Repo
from ipo_engine.errors import CriticalDependencyError, UnknownJobError
from ipo_engine.utils.time import now_ist


@pytest.fixture
def orch(handle):
    return handle.orchestrator


def events(session_factory, event_type):
    with session_factory() as s:
        return [(e.symbol, e.payload) for e in Repo(s).system_events.recent(event_type)]


def stored(session_factory, symbol):
    with session_factory() as s:
        row = Repo(s).offerings.get_by_symbol(symbol)
        return None if row is None else {"status": row.status, "max_price": float(row.max_price),
                                         "priority_resync": bool(row.priority_resync)}


@pytest.mark.asyncio
class TestOfferingMaster:
    async def test_create_then_idempotent(self, orch, fake_client, broadcast, cache, handle):
        fake_client.offerings = [make_offering("ALPHA"), make_offering("BETA", status="upcoming", open_in_days=2, close_in_days=4)]

        first = await orch.sync_offering_master()
        assert (first.processed, first.created, first.updated) == (2, 2, 0)
        assert len(messages(broadcast, "offering_update")) == 2
        assert len(cache.get_offering_list()) == 2
        assert [o["symbol"] for o in cache.get_offering_list({"status": "upcoming"})] == ["BETA"]
        # tracking requests go through the tracker inbox
        assert await handle.tracker.drain_inbox() == 2
        assert {r.symbol for r in handle.tracker.records.values()} == {"ALPHA", "BETA"}

        second = await orch.sync_offering_master()
        assert (second.created, second.updated, second.unchanged) == (0, 0, 2)
        # nothing changed, nothing re-broadcast
        assert len(messages(broadcast, "offering_update")) == 2

    async def test_update_detected(self, orch, fake_client, session_factory):
        fake_client.offerings = [make_offering("ALPHA")]
        await orch.sync_offering_master()
        fake_client.offerings = [make_offering("ALPHA", maxPrice=115.0)]
        res = await orch.sync_offering_master()
        assert res.updated == 1
        assert stored(session_factory, "ALPHA")["max_price"] == 115.0

    async def test_invalid_records_are_not_persisted(self, orch, fake_client, session_factory):
        fake_client.offerings = [make_offering("ALPHA"), make_offering("BAD", minPrice=200, maxPrice=100)]
        res = await orch.sync_offering_master()
        assert (res.created, res.validation_errors) == (1, 1)
        assert stored(session_factory, "BAD") is None
        (symbol, payload), = events(session_factory, "DATA_QUALITY_FAILURE")
        assert symbol == "BAD"
        assert "Min price cannot be greater than max price" in payload["errors"]
        assert orch.status()["data_integrity"]["validation_failures"][0]["symbol"] == "BAD"

    async def test_status_regression_is_ignored(self, orch, fake_client, session_factory):
        closed = dict(status="closed", open_in_days=-5, close_in_days=-3)
        fake_client.offerings = [make_offering("ALPHA", **closed)]
        await orch.sync_offering_master()

        fake_client.offerings = [make_offering("ALPHA", **{**closed, "status": "open"})]
        res = await orch.sync_offering_master()
        assert (res.updated, res.unchanged) == (0, 1)
        assert stored(session_factory, "ALPHA")["status"] == "closed"
        (symbol, payload), = events(session_factory, "STATUS_REGRESSION")
        assert payload == {"stored": "closed", "incoming": "open"}

        # other fields still apply while the status stays put
        fake_client.offerings = [make_offering("ALPHA", **{**closed, "status": "open", "maxPrice": 120.0})]
        res = await orch.sync_offering_master()
        assert res.updated == 1
        assert stored(session_factory, "ALPHA") == {"status": "closed", "max_price": 120.0, "priority_resync": False}


@pytest.mark.asyncio
class TestFailures:
    async def test_failing_job_is_recorded_and_queued(self, orch, fake_client, broadcast, session_factory):
        fake_client.offerings = [make_offering("ALPHA")]
        fake_client.fail_master = 2  # both attempts of the retry budget

        res = await orch.trigger_sync(JOB_OFFERING_MASTER)
        assert res["summary"]["error"]
        state = orch.status()["jobs"][JOB_OFFERING_MASTER]
        assert state["status"] == "error"
        assert state["failures"] == 1
        assert len(orch.retry_queue) == 1

        (msg,) = messages(broadcast, "system_status", "sync_error")
        assert msg["priority"] == "high"
        assert msg["data"]["job"] == JOB_OFFERING_MASTER
        assert events(session_factory, "SYNC_ERROR")
        with session_factory() as s:
            log = Repo(s).sync_logs.recent(JOB_OFFERING_MASTER)[0]
            assert log.status == "failed"

        replay = await orch.process_failed_operations()
        assert (replay["recovered"], replay["remaining"]) == (1, 0)
        assert stored(session_factory, "ALPHA") is not None

    async def test_critical_health_blocks_start(self, orch, fake_client, session_factory):
        fake_client.healthy = False
        with pytest.raises(CriticalDependencyError) as exc:
            await orch.start()
        assert exc.value.failed == ["market_client"]
        assert not orch.running
        assert events(session_factory, "HEALTH_DEGRADED")

    async def test_health_report(self, orch):
        report = await orch.health_check()
        assert report["status"] == "healthy"
        assert set(report["components"]) == {"store", "market_client", "cache", "broadcast", "tracker"}

    async def test_unknown_job(self, orch):
        with pytest.raises(UnknownJobError):
            await orch.trigger_sync("nope")

    async def test_trigger_all(self, orch, fake_client):
        fake_client.offerings = [make_offering("ALPHA")]
        res = await orch.trigger_sync("all")
        assert set(res["results"]) == set(JOBS)
        assert all(r["status"] == "ok" for r in res["results"].values())


@pytest.mark.asyncio
class TestLiveData:
    async def test_live_data_pipeline(self, orch, seed_offering, fake_client, cache, broadcast, handle):
        oid = seed_offering("ALPHA")
        seed_offering("SOONCO", status="upcoming", open_in_days=3, close_in_days=5)
        fake_client.categories["ALPHA"] = category_rows(retail=0.8, qib=2.4, nib=1.1)
        fake_client.demand["ALPHA"] = [
            {"price": "Cut-off", "absoluteQuantity": 1000, "absoluteBidCount": 10},
            {"price": "110", "absoluteQuantity": 2000, "absoluteBidCount": 20},
        ]
        handle.tracker.add_tracking(oid)

        res = await orch.sync_live_data()
        assert res.processed == 1
        assert res.created == 5
        sub = cache.get_realtime("SUBSCRIPTION", "ALPHA")
        assert sub["total_subscription"] == pytest.approx(2.4)
        assert cache.get_realtime("DEMAND", "ALPHA")["total_demand"] == 3000
        assert messages(broadcast, "subscription_update")
        assert handle.tracker.records[oid].overall == 0.0
        assert await handle.tracker.drain_inbox() == 1
        assert handle.tracker.records[oid].overall == pytest.approx(2.4)
        # only open offerings are polled
        assert fake_client.calls["categories:SOONCO"] == 0

    async def test_all_symbols_failing_raises_into_queue(self, orch, seed_offering, fake_client):
        seed_offering("ALPHA")
        fake_client.fail_symbols.add("ALPHA")
        res = await orch.trigger_sync(JOB_LIVE_DATA)
        assert "live data fetch failed" in res["summary"]["error"]
        assert len(orch.retry_queue) == 1

    async def test_partial_failure_is_counted(self, orch, seed_offering, fake_client):
        seed_offering("ALPHA")
        seed_offering("BETA")
        fake_client.fail_symbols.add("BETA")
        res = await orch.sync_live_data()
        assert (res.processed, res.errors) == (1, 1)


@pytest.mark.asyncio
class TestPremiumSync:
    async def test_weighted_premium_and_change(self, orch, seed_offering, fake_client, cache, broadcast, session_factory):
        oid = seed_offering("ALPHA")
        fake_client.premiums[("ALPHA", "market")] = {"value": 20}
        fake_client.premiums[("ALPHA", "broker")] = {"value": 30}

        res = await orch.sync_premium()
        assert res.processed == 1
        first = cache.get_realtime("GMP", "ALPHA")
        assert first["value"] == pytest.approx(24.71)
        assert first["change"]["direction"] == "stable"

        fake_client.premiums[("ALPHA", "market")] = {"value": 40}
        await orch.sync_premium()
        second = cache.get_realtime("GMP", "ALPHA")
        assert second["value"] == pytest.approx(35.29)
        assert second["change"]["direction"] == "up"
        assert len(messages(broadcast, "gmp_update")) == 2
        with session_factory() as s:
            assert Repo(s).premium_quotes.count() == 2
            assert float(Repo(s).premium_quotes.latest(oid).value) == pytest.approx(35.29)

    async def test_no_quotes_skips(self, orch, seed_offering, cache):
        seed_offering("ALPHA")
        res = await orch.sync_premium()
        assert res.processed == 0
        assert cache.get_realtime("GMP", "ALPHA") is None


@pytest.mark.asyncio
class TestAnalyticsSync:
    async def test_batch_and_single(self, orch, seed_offering, broadcast, cache):
        a = seed_offering("ALPHA")
        seed_offering("BETA")
        res = await orch.trigger_sync(JOB_ANALYTICS)
        assert res["summary"]["processed"] == 2
        assert [m["data"]["version"] for m in messages(broadcast, "analytics_update")] == [1, 1]
        system = cache.get(cache.key("system", "analytics"))
        assert system["offerings"]["active"] == 2

        single = await orch.trigger_sync(JOB_ANALYTICS, {"offering_id": a})
        assert single["summary"]["processed"] == 1
        assert messages(broadcast, "analytics_update")[-1]["data"]["version"] == 2


@pytest.mark.asyncio
class TestConsistency:
    async def test_stale_flagged_then_resynced(self, orch, seed_offering, fake_client, session_factory):
        oid = seed_offering("ALPHA")
        with session_factory() as s:
            s.execute(update(models.Offering).where(models.Offering.id == oid)
                      .values(last_sync_at=now_ist() - timedelta(days=3)))
            s.commit()

        report = await orch.consistency_check()
        assert report["stale_offerings"] == ["ALPHA"]
        assert report["missing_analytics"] == ["ALPHA"]
        assert report["repaired"] == 1
        assert stored(session_factory, "ALPHA")["priority_resync"]
        assert events(session_factory, "CONSISTENCY_ISSUE")

        fake_client.offerings = [make_offering("BETA"), make_offering("ALPHA")]
        res = await orch.sync_offering_master()
        assert res.details["priority_resynced"] == 1
        assert not stored(session_factory, "ALPHA")["priority_resync"]

        again = await orch.consistency_check()
        assert again == {"stale_offerings": [], "missing_analytics": ["BETA"], "repaired": 1}

    async def test_cleanup(self, orch):
        assert orch.cleanup() == {"failed_ops_pruned": 0, "analytics_entries_pruned": 0}


@pytest.mark.asyncio
class TestJobLocks:
    async def test_same_job_never_overlaps(self, orch):
        active = peak = 0

        async def slow():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return JobSummary(job=JOB_PREMIUM, processed=1)

        orch._runners[JOB_PREMIUM] = slow
        await asyncio.gather(
            orch.trigger_sync(JOB_PREMIUM),
            orch.trigger_sync(JOB_PREMIUM),
            orch.safe_execute(JOB_PREMIUM, slow),
        )
        assert peak == 1
        assert orch.jobs[JOB_PREMIUM].runs == 3

    async def test_replay_waits_for_running_tick(self, orch):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return JobSummary(job=JOB_PREMIUM)

        await orch.safe_execute(JOB_PREMIUM, flaky)
        assert len(orch.retry_queue) == 1

        lock = orch._job_lock(JOB_PREMIUM)
        await lock.acquire()
        replay = asyncio.create_task(orch.process_failed_operations())
        for _ in range(5):
            await asyncio.sleep(0)
        assert len(calls) == 1
        lock.release()
        assert (await replay)["recovered"] == 1
        assert len(calls) == 2


@pytest.mark.asyncio
class TestLifecycle:
    async def test_start_stop(self, orch, broadcast):
        await orch.start()
        loops = orch.status()["active_loops"]
        assert set(JOBS) <= set(loops)
        assert {"health", "failed-operations", "consistency", "cleanup"} <= set(loops)

        done = []

        async def op():
            done.append(1)

        orch.retry_queue.enqueue("late", op, "boom")
        await orch.stop()
        assert not orch.running
        assert not orch.status()["active_loops"]
        (msg,) = messages(broadcast, "system_status", "sync_service_shutdown")
        assert msg["priority"] == "high"
        assert msg["data"]["drained"]["recovered"] == 1
        assert done == [1]

    async def test_initial_sync_then_loops_wait(self, orch, cfg, fake_client, broadcast):
        cfg.SYNC_INITIAL_RUN = True
        fake_client.offerings = [make_offering("ALPHA")]
        await orch.start()
        await asyncio.sleep(0)
        try:
            (msg,) = messages(broadcast, "system_status", "initial_sync_complete")
            assert msg["data"]["results"] == {j: "ok" for j in JOBS}
            assert all(orch.jobs[j].runs == 1 for j in JOBS)
            assert orch.status()["jobs"][JOB_PREMIUM]["next_sync"] is not None
        finally:
            await orch.stop()
