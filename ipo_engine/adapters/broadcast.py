from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Any

import redis

from ipo_engine.config import settings
from ipo_engine.utils.time import now_ist

logger = logging.getLogger(__name__)

PRIORITY_NORMAL = "normal"
PRIORITY_HIGH = "high"


class BroadcastChannel:
    """Push channel for live consumers.

    Messages fan out to in-process subscriber queues (the WebSocket endpoint
    holds one per connection) and, when configured, to a Redis pub/sub
    channel for other processes. Every message carries its own timestamp.
    """

    def __init__(self, redis_client: redis.Redis | None = None, channel: str | None = None,
                 queue_size: int = 500, keep_recent: int = 200) -> None:
        self._redis = redis_client
        self._channel = channel or settings.REDIS_BROADCAST_CHANNEL
        self._queue_size = int(queue_size)
        self._subscribers: set[asyncio.Queue] = set()
        self.recent: deque[dict] = deque(maxlen=int(keep_recent))
        self.sent = 0
        self.dropped = 0
        self.closed = False

    # --- subscribers ---

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # --- publish ---

    async def _publish(self, message: dict) -> None:
        if self.closed:
            return
        self.recent.append(message)
        self.sent += 1

        for q in list(self._subscribers):
            if q.full():
                # slow consumer: drop its oldest message
                try:
                    q.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass
            q.put_nowait(message)

        if self._redis is not None:
            try:
                await asyncio.to_thread(self._redis.publish, self._channel, json.dumps(message, default=str))
            except redis.RedisError as e:
                logger.warning("broadcast publish to redis failed: %s", e)

    async def broadcast_update(self, kind: str, entity_id: Any, payload: dict,
                               priority: str = PRIORITY_NORMAL) -> None:
        await self._publish({
            "type": f"{kind}_update",
            "kind": kind,
            "entity_id": entity_id,
            "data": payload,
            "priority": priority,
            "timestamp": now_ist().isoformat(),
        })

    async def broadcast_system_status(self, payload: dict, priority: str = PRIORITY_NORMAL) -> None:
        await self._publish({
            "type": "system_status",
            "kind": str(payload.get("type") or "system_status"),
            "data": payload,
            "priority": priority,
            "timestamp": now_ist().isoformat(),
        })

    async def broadcast_alert(self, kind: str, payload: dict) -> None:
        await self._publish({
            "type": "alert",
            "kind": kind,
            "data": payload,
            "priority": PRIORITY_HIGH if payload.get("severity") in {"high", "critical"} else PRIORITY_NORMAL,
            "timestamp": now_ist().isoformat(),
        })

    def health_check(self) -> dict:
        if self.closed:
            return {"status": "unhealthy", "error": "closed"}
        if self._redis is not None:
            try:
                self._redis.ping()
            except redis.RedisError as e:
                return {"status": "degraded", "error": str(e), "subscribers": self.subscriber_count}
        return {"status": "healthy", "subscribers": self.subscriber_count, "sent": self.sent}

    def close(self) -> None:
        self.closed = True
        self._subscribers.clear()


def get_broadcast_channel() -> BroadcastChannel:
    url = (settings.REDIS_URL or "").strip()
    client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=2.0) if url else None
    return BroadcastChannel(redis_client=client)
