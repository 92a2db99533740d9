from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from ipo_engine.adapters.broadcast import BroadcastChannel, get_broadcast_channel
from ipo_engine.adapters.cache import CacheBackend, get_cache
from ipo_engine.adapters.market_client import MarketDataClient, get_market_client
from ipo_engine.config import Settings, settings as default_settings
from ipo_engine.core.analytics import AnalyticsEngine
from ipo_engine.core.demand_tracker import DemandTracker
from ipo_engine.core.orchestrator import SyncOrchestrator
from ipo_engine.core.retry import RetryPolicy
from ipo_engine.database.engine import SessionLocal, init_engine, init_schema_check
from ipo_engine.utils.time import now_ist

logger = logging.getLogger(__name__)


@dataclass
class EngineHandle:
    cfg: Settings
    client: MarketDataClient
    cache: CacheBackend
    broadcast: BroadcastChannel
    analytics: AnalyticsEngine
    tracker: DemandTracker
    orchestrator: SyncOrchestrator
    started_at: datetime = field(default_factory=now_ist)
    loops_started: bool = False


def build(
    cfg: Settings | None = None,
    client: MarketDataClient | None = None,
    cache: CacheBackend | None = None,
    broadcast: BroadcastChannel | None = None,
    session_factory: Callable = SessionLocal,
    retry_policy: RetryPolicy | None = None,
) -> EngineHandle:
    """Wire every component once; nothing is started."""
    cfg = cfg or default_settings
    client = client or get_market_client()
    cache = cache or get_cache()
    broadcast = broadcast or get_broadcast_channel()
    policy = retry_policy or RetryPolicy.from_settings()

    analytics = AnalyticsEngine(cache, session_factory=session_factory, cfg=cfg)
    tracker = DemandTracker(client, cache, broadcast, session_factory=session_factory, cfg=cfg, retry_policy=policy)
    orchestrator = SyncOrchestrator(
        client, cache, broadcast, analytics,
        tracker=tracker, session_factory=session_factory, cfg=cfg, retry_policy=policy,
    )
    return EngineHandle(cfg, client, cache, broadcast, analytics, tracker, orchestrator)


async def start(cfg: Settings | None = None, **overrides: Any) -> EngineHandle:
    """Bring the store up, wire components and start background loops.

    Loops only start when START_SYNC_ENGINE is set; otherwise the handle still
    serves manual triggers, analytics and tracking operations.
    CriticalDependencyError from the orchestrator health gate propagates.
    """
    cfg = cfg or default_settings
    init_engine(cfg.DATABASE_URL)
    init_schema_check()

    handle = build(cfg, **overrides)
    if cfg.START_SYNC_ENGINE:
        try:
            await handle.orchestrator.start()
            if cfg.START_DEMAND_TRACKER:
                await handle.tracker.start()
        except Exception:
            await stop(handle)
            raise
        handle.loops_started = True
    logger.info("ipo engine ready (loops=%s provider=%s)", handle.loops_started, cfg.MARKET_PROVIDER)
    return handle


async def stop(handle: EngineHandle) -> None:
    await handle.tracker.stop()
    if handle.orchestrator.running:
        await handle.orchestrator.stop()
    try:
        await handle.client.aclose()
    except Exception as e:
        logger.warning("market client close failed: %s", e)
    handle.broadcast.close()
    handle.loops_started = False
