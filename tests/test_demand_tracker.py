"""Tests for the demand tracker."""

from collections import deque
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from conftest import category_rows, messages
from ipo_engine.core.demand_tracker import HIGH, LOW, MEDIUM, DemandTracker, _insert_sample
from ipo_engine.core.records import CategoryRecord
from ipo_engine.database import models
from ipo_engine.database.repo import Repo
from ipo_engine.errors import OfferingNotFoundError
from ipo_engine.utils.time import now_ist


@pytest.fixture
def tracker(cfg, session_factory, fake_client, cache, broadcast, fast_retry):
    return DemandTracker(fake_client, cache, broadcast, session_factory=session_factory, cfg=cfg, retry_policy=fast_retry)


@pytest.mark.asyncio
class TestTrackingSet:
    async def test_priority_follows_status(self, tracker, seed_offering):
        open_id = seed_offering("OPENCO", status="open")
        upcoming_id = seed_offering("SOONCO", status="upcoming", open_in_days=3, close_in_days=5)
        closed_id = seed_offering("DONECO", status="closed", open_in_days=-5, close_in_days=-3)

        assert tracker.add_tracking(open_id)["priority"] == HIGH
        assert tracker.add_tracking(upcoming_id)["priority"] == MEDIUM
        assert tracker.add_tracking(closed_id)["priority"] == LOW
        assert list(tracker.queues[HIGH]) == [open_id]
        assert tracker.add_tracking(open_id)["interval_sec"] == tracker.intervals[HIGH]
        # re-adding does not duplicate the queue entry
        assert list(tracker.queues[HIGH]) == [open_id]

    async def test_unknown_offering(self, tracker, session_factory):
        with pytest.raises(OfferingNotFoundError):
            tracker.add_tracking(12345)

    async def test_remove(self, tracker, seed_offering):
        oid = seed_offering()
        tracker.add_tracking(oid)
        assert tracker.remove_tracking(oid)
        assert tracker.get_tracking(oid) is None
        assert oid not in tracker.queues[HIGH]
        assert not tracker.remove_tracking(oid)

    async def test_snapshot_is_a_copy(self, tracker, seed_offering):
        oid = seed_offering()
        tracker.add_tracking(oid)
        snap = tracker.get_tracking(oid)
        snap["ratios"]["RETAIL"] = 99.0
        snap["alerts"].append({"type": "X"})
        assert tracker.records[oid].ratios == {}
        assert len(tracker.records[oid].alerts) == 0

    async def test_rebuild_from_store_skips_listed(self, tracker, seed_offering):
        seed_offering("OPENCO", status="open")
        seed_offering("OLDCO", status="listed", open_in_days=-20, close_in_days=-18, listingDate=(now_ist() - timedelta(days=12)).isoformat())
        assert tracker.rebuild_from_store() == 1
        assert [r.symbol for r in tracker.records.values()] == ["OPENCO"]


@pytest.mark.asyncio
class TestPoll:
    async def test_poll_pipeline(self, tracker, seed_offering, fake_client, cache, broadcast, session_factory):
        oid = seed_offering("ALPHA")
        fake_client.categories["ALPHA"] = category_rows(retail=0.8, qib=2.4, nib=1.1)
        tracker.add_tracking(oid)

        assert await tracker.poll(oid)
        snap = tracker.get_tracking(oid)
        assert snap["overall_subscription"] == pytest.approx(2.4)
        assert snap["ratios"] == {"RETAIL": 0.8, "QIB": 2.4, "NIB": 1.1}
        retail = next(c for c in snap["categories"] if c["category"] == "RETAIL")
        assert retail["sub_category"] == "IND"
        assert retail["average_bid_size"] == pytest.approx(160.0)
        assert retail["amount_estimate"] == pytest.approx(800_000 * 110.0)
        assert snap["data_quality"] == 100

        with session_factory() as s:
            n = s.execute(select(func.count(models.SubscriptionRecord.id))).scalar_one()
        assert n == 3
        assert cache.get_realtime("TRACKING", "ALPHA")["overall_subscription"] == pytest.approx(2.4)
        assert messages(broadcast, "demand_update")
        # milestone 1 crossed on the first sample
        assert [a["data"]["milestone"] for a in snap["alerts"] if a["type"] == "SUBSCRIPTION_MILESTONE"] == [1]

    async def test_repeated_failures_drop_from_queue(self, tracker, seed_offering, fake_client, cfg):
        oid = seed_offering("BROKEN")
        fake_client.fail_symbols.add("BROKEN")
        tracker.add_tracking(oid)

        for _ in range(cfg.TRACKER_MAX_RETRIES + 1):
            assert await tracker.run_cycle(HIGH) == 1
        rec = tracker.records[oid]
        assert rec.dropped
        assert rec.consecutive_failures == cfg.TRACKER_MAX_RETRIES + 1
        assert oid not in tracker.queues[HIGH]
        assert await tracker.run_cycle(HIGH) == 0
        assert tracker.performance()["failed_updates"] == cfg.TRACKER_MAX_RETRIES + 1

        # manual re-add brings it back
        fake_client.fail_symbols.clear()
        fake_client.categories["BROKEN"] = category_rows(1.0, 1.0, 1.0)
        tracker.add_tracking(oid)
        assert not tracker.records[oid].dropped
        assert await tracker.run_cycle(HIGH) == 1
        assert tracker.records[oid].consecutive_failures == 0

    async def test_cycle_takes_batch_round_robin(self, tracker, seed_offering, fake_client, cfg):
        ids = [seed_offering(f"CO{i}") for i in range(cfg.TRACKER_BATCH_SIZE + 2)]
        for i, oid in enumerate(ids):
            fake_client.categories[f"CO{i}"] = category_rows(1.0, 1.0, 1.0)
            tracker.add_tracking(oid)

        assert await tracker.run_cycle(HIGH) == cfg.TRACKER_BATCH_SIZE
        # the two that were not polled are now at the head
        assert list(tracker.queues[HIGH])[:2] == ids[cfg.TRACKER_BATCH_SIZE:]

    async def test_force_track(self, tracker, seed_offering, fake_client):
        oid = seed_offering("ALPHA")
        fake_client.categories["ALPHA"] = category_rows(0.3, 0.2, 0.1)
        snap = await tracker.force_track(oid)
        assert snap["overall_subscription"] == pytest.approx(0.3)
        assert snap["last_polled_at"] is not None

    async def test_empty_poll_keeps_last_state(self, tracker, seed_offering, fake_client, session_factory):
        oid = seed_offering("ALPHA")
        fake_client.categories["ALPHA"] = category_rows(retail=0.8, qib=2.4, nib=1.1)
        tracker.add_tracking(oid)
        assert await tracker.poll(oid)
        before = tracker.get_tracking(oid)

        fake_client.categories["ALPHA"] = []
        assert not await tracker.poll(oid)
        rec = tracker.records[oid]
        assert rec.overall == pytest.approx(2.4)
        assert rec.ratios == {"RETAIL": 0.8, "QIB": 2.4, "NIB": 1.1}
        assert len(rec.history) == 1
        assert tracker.get_tracking(oid)["last_polled_at"] == before["last_polled_at"]
        assert rec.consecutive_failures == 0
        with session_factory() as s:
            n = s.execute(select(func.count(models.SubscriptionRecord.id))).scalar_one()
        assert n == 3


@pytest.mark.asyncio
class TestCategoryVelocity:
    async def test_rapid_growth_alert_names_the_category(self, tracker, seed_offering, broadcast):
        oid = seed_offering("ALPHA")
        tracker.add_tracking(oid)
        t0 = now_ist() - timedelta(hours=2)
        await tracker.ingest_live(oid, [CategoryRecord("QIB", None, 1, 1, 10.0, t0),
                                        CategoryRecord("RETAIL", None, 1, 1, 0.5, t0)])
        t1 = t0 + timedelta(hours=1)
        await tracker.ingest_live(oid, [CategoryRecord("QIB", None, 1, 1, 10.0, t1),
                                        CategoryRecord("RETAIL", None, 1, 1, 5.0, t1)])

        rec = tracker.records[oid]
        # overall (max category) did not move
        assert rec.velocity == pytest.approx(0.0)
        assert rec.category_velocity == {"QIB": pytest.approx(0.0), "RETAIL": pytest.approx(4.5)}
        rapid = [a for a in rec.alerts if a["type"] == "RAPID_SUBSCRIPTION_GROWTH"]
        assert [a["data"]["category"] for a in rapid] == ["RETAIL"]
        assert [m["data"]["data"]["category"] for m in messages(broadcast, "alert", "RAPID_SUBSCRIPTION_GROWTH")] == ["RETAIL"]
        assert {"type": "RAPID_GROWTH", "category": "RETAIL"}.items() <= next(
            p for p in rec.patterns if p["type"] == "RAPID_GROWTH").items()
        snap = tracker.get_tracking(oid)
        assert snap["category_velocity"]["RETAIL"] == pytest.approx(4.5)
        assert set(snap["predictions"]["closing_subscription"]) == {"QIB", "RETAIL"}

    async def test_late_sample_is_inserted_in_order(self, tracker, seed_offering):
        oid = seed_offering("ALPHA")
        tracker.add_tracking(oid)
        t = now_ist() - timedelta(hours=3)
        await tracker.ingest_live(oid, [CategoryRecord("QIB", None, 1, 1, 1.0, t)])
        await tracker.ingest_live(oid, [CategoryRecord("QIB", None, 1, 1, 3.0, t + timedelta(hours=2))])
        # arrives after the newer sample
        await tracker.ingest_live(oid, [CategoryRecord("QIB", None, 1, 1, 2.0, t + timedelta(hours=1))])

        rec = tracker.records[oid]
        assert [v for _, v in rec.history] == [1.0, 2.0, 3.0]
        assert [v for _, v in rec.category_history["QIB"]] == [1.0, 2.0, 3.0]
        assert rec.velocity == pytest.approx(1.0)


class TestSampleOrder:
    def test_insert_sample(self):
        t = now_ist()
        hist: deque = deque(maxlen=3)
        for h, v in [(0, 1.0), (2, 3.0), (1, 2.0), (2, 3.5), (3, 4.0)]:
            _insert_sample(hist, t + timedelta(hours=h), v)
        assert [v for _, v in hist] == [2.0, 3.5, 4.0]


@pytest.mark.asyncio
class TestInbox:
    async def test_posted_live_data_applies_on_drain(self, tracker, seed_offering):
        oid = seed_offering("ALPHA")
        tracker.add_tracking(oid)
        tracker.post_live(oid, [CategoryRecord("QIB", None, 1, 1, 2.0, now_ist())])
        assert tracker.records[oid].overall == 0.0
        assert tracker.status()["inbox_depth"] == 1

        assert await tracker.drain_inbox() == 1
        assert tracker.records[oid].overall == pytest.approx(2.0)
        assert tracker.status()["inbox_depth"] == 0

    async def test_posted_tracking_request(self, tracker, seed_offering):
        oid = seed_offering("ALPHA")
        tracker.post_tracking(oid)
        assert oid not in tracker.records
        await tracker.drain_inbox()
        assert tracker.records[oid].priority == HIGH

    async def test_full_inbox_drops_oldest(self, tracker, seed_offering):
        oid = seed_offering("ALPHA")
        tracker.add_tracking(oid)
        tracker._inbox_max = 2
        base = now_ist() - timedelta(hours=3)
        for i in range(3):
            tracker.post_live(oid, [CategoryRecord("QIB", None, 1, 1, 1.0 + i, base + timedelta(hours=i))])
        assert tracker.status()["inbox_dropped"] == 1
        assert await tracker.drain_inbox() == 2
        assert [v for _, v in tracker.records[oid].history] == [2.0, 3.0]

    async def test_submit_without_running_loops(self, tracker, seed_offering):
        oid = seed_offering("ALPHA")
        assert (await tracker.submit("add", oid))["priority"] == HIGH
        assert await tracker.submit("remove", oid)
        assert not await tracker.submit("remove", oid)
        with pytest.raises(ValueError):
            await tracker.submit("live", oid)

    async def test_submit_goes_through_running_inbox(self, tracker, seed_offering, fake_client):
        oid = seed_offering("ALPHA")
        fake_client.categories["ALPHA"] = category_rows(0.3, 0.2, 0.1)
        await tracker.start()
        try:
            assert "inbox" in tracker.status()["active_loops"]
            snap = await tracker.submit("force", oid)
            assert snap["overall_subscription"] == pytest.approx(0.3)
            with pytest.raises(OfferingNotFoundError):
                await tracker.submit("add", 99999)
        finally:
            await tracker.stop()

    async def test_stop_drains_pending(self, tracker, seed_offering):
        oid = seed_offering("ALPHA")
        await tracker.start()
        tracker.post_live(oid, [CategoryRecord("QIB", None, 1, 1, 4.0, now_ist())])
        await tracker.stop()
        assert tracker.status()["inbox_depth"] == 0
        assert tracker.records[oid].overall == pytest.approx(4.0)


@pytest.mark.asyncio
class TestMilestones:
    async def test_milestone_sequence_fires_each_once(self, tracker, seed_offering, broadcast):
        oid = seed_offering("ALPHA")
        tracker.add_tracking(oid)
        base = now_ist() - timedelta(hours=6)
        for i, ratio in enumerate([0.5, 1.2, 1.1, 6.0, 5.5]):
            cats = [CategoryRecord("RETAIL", None, 1000, 10, ratio, base + timedelta(hours=i))]
            assert await tracker.ingest_live(oid, cats)

        fired = [a["data"]["milestone"] for a in tracker.records[oid].alerts if a["type"] == "SUBSCRIPTION_MILESTONE"]
        assert fired == [1, 5]
        assert tracker.records[oid].fired_milestones == {1, 5}
        sent = [m["data"]["data"]["milestone"] for m in messages(broadcast, "alert", "SUBSCRIPTION_MILESTONE")]
        assert sent == [1, 5]

    async def test_restart_does_not_refire(self, tracker, seed_offering, session_factory):
        oid = seed_offering("ALPHA")
        ts = now_ist() - timedelta(hours=1)
        with session_factory() as s:
            Repo(s).subscriptions.append_many(oid, [CategoryRecord("QIB", None, 1, 1, 6.0, ts)])
            s.commit()
        tracker.add_tracking(oid)
        assert tracker.records[oid].fired_milestones == {1, 5}

        await tracker.ingest_live(oid, [CategoryRecord("QIB", None, 1, 1, 7.0, now_ist())])
        assert not [a for a in tracker.records[oid].alerts if a["type"] == "SUBSCRIPTION_MILESTONE"]

    async def test_alert_list_is_bounded(self, tracker, seed_offering, cfg):
        oid = seed_offering("ALPHA")
        tracker.add_tracking(oid)
        base = now_ist() - timedelta(hours=2)
        # every sample: QIB > 20 raises an extreme-oversubscription alert
        for i in range(cfg.TRACKER_MAX_ALERTS + 10):
            cats = [CategoryRecord("QIB", None, 1, 1, 25.0, base + timedelta(seconds=i))]
            await tracker.ingest_live(oid, cats)
        assert len(tracker.records[oid].alerts) == cfg.TRACKER_MAX_ALERTS


@pytest.mark.asyncio
class TestMaintenanceAndTrends:
    async def test_maintenance(self, tracker, seed_offering, cfg):
        keep = seed_offering("ALPHA")
        gone = seed_offering("OLDCO", status="listed", open_in_days=-20, close_in_days=-18,
                             listingDate=(now_ist() - timedelta(days=cfg.TRACKER_RETENTION_DAYS + 2)).isoformat())
        tracker.add_tracking(keep)
        tracker.add_tracking(gone)
        rec = tracker.records[keep]
        rec.history.append((now_ist() - timedelta(days=cfg.TRACKER_RETENTION_DAYS + 1), 0.2))
        rec.history.append((now_ist(), 0.9))

        res = tracker.maintenance()
        assert res == {"trimmed_samples": 1, "removed": 1}
        assert gone not in tracker.records
        assert len(tracker.records[keep].history) == 1

    async def test_market_trends_broadcast(self, tracker, seed_offering, broadcast):
        oid = seed_offering("ALPHA")
        tracker.add_tracking(oid)
        await tracker.ingest_live(oid, [CategoryRecord("QIB", None, 1, 1, 4.0, now_ist())])
        trends = await tracker.analyze_market()
        assert trends["sentiment"] == "very_bullish"
        assert messages(broadcast, "system_status", "market_trends")

    async def test_start_stop(self, tracker, seed_offering):
        seed_offering("ALPHA")
        await tracker.start()
        status = tracker.status()
        assert status["running"]
        assert status["tracked"] == 1
        assert "priority:HIGH" in status["active_loops"]
        await tracker.stop()
        assert not tracker.status()["active_loops"]
        assert tracker.health_check()["status"] in {"healthy", "degraded"}
