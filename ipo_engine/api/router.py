from __future__ import annotations

import logging

from fastapi import APIRouter, Body, HTTPException, Request, WebSocket, WebSocketDisconnect

from ipo_engine.core.engine import EngineHandle
from ipo_engine.errors import OfferingNotFoundError, UnknownJobError
from ipo_engine.utils.time import now_ist_str

logger = logging.getLogger(__name__)

router = APIRouter()


def _engine(request: Request) -> EngineHandle:
    handle = getattr(request.app.state, "engine", None)
    if handle is None:
        raise HTTPException(status_code=503, detail="engine not started")
    return handle


@router.get("/health")
async def health(request: Request) -> dict:
    h = _engine(request)
    report = await h.orchestrator.health_check()
    return {"ok": report["status"] != "critical", "time": now_ist_str(), **report}


@router.get("/status")
async def status(request: Request) -> dict:
    h = _engine(request)
    return {
        "time": now_ist_str(),
        "loops_started": h.loops_started,
        "sync": h.orchestrator.status(),
        "tracker": h.tracker.status(),
    }


@router.post("/sync/{job}")
async def trigger_sync(job: str, request: Request, payload: dict | None = Body(default=None)) -> dict:
    h = _engine(request)
    try:
        return await h.orchestrator.trigger_sync(job, payload or {})
    except UnknownJobError as e:
        raise HTTPException(status_code=400, detail=e.message)


@router.get("/offerings/{offering_id}/analytics")
def offering_analytics(
    offering_id: int,
    request: Request,
    time_range_days: int | None = None,
    include_historical: bool = True,
    include_predictions: bool = True,
    refresh: bool = False,
) -> dict:
    h = _engine(request)
    try:
        return h.analytics.get_snapshot(
            offering_id,
            time_range_days=time_range_days,
            include_historical=include_historical,
            include_predictions=include_predictions,
            force=refresh,
        )
    except OfferingNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.get("/tracking")
async def list_tracking(request: Request) -> dict:
    h = _engine(request)
    items = h.tracker.get_tracking()
    return {"count": len(items), "items": items}


@router.get("/tracking/{offering_id}")
async def get_tracking(offering_id: int, request: Request) -> dict:
    snap = _engine(request).tracker.get_tracking(offering_id)
    if snap is None:
        raise HTTPException(status_code=404, detail=f"offering {offering_id} is not tracked")
    return snap


@router.post("/tracking/{offering_id}")
async def add_tracking(offering_id: int, request: Request) -> dict:
    try:
        return await _engine(request).tracker.submit("add", offering_id)
    except OfferingNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.delete("/tracking/{offering_id}")
async def remove_tracking(offering_id: int, request: Request) -> dict:
    if not await _engine(request).tracker.submit("remove", offering_id):
        raise HTTPException(status_code=404, detail=f"offering {offering_id} is not tracked")
    return {"ok": True, "offering_id": offering_id}


@router.post("/tracking/{offering_id}/poll")
async def poll_tracking(offering_id: int, request: Request) -> dict:
    try:
        return await _engine(request).tracker.submit("force", offering_id)
    except OfferingNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.websocket("/ws")
async def stream(ws: WebSocket) -> None:
    handle = getattr(ws.app.state, "engine", None)
    if handle is None:
        await ws.close(code=1013)
        return
    await ws.accept()
    q = handle.broadcast.subscribe()
    try:
        while True:
            msg = await q.get()
            await ws.send_json(msg)
    except WebSocketDisconnect:
        logger.debug("websocket client disconnected")
    finally:
        handle.broadcast.unsubscribe(q)
