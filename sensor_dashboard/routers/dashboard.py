from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from pydantic import StrictBool, StrictInt, TypeAdapter, ValidationError

from sensor_dashboard.schemas import NotificationPayload, RefreshResult, TransitionRequest, TransitionResult
from sensor_dashboard.services.session import DashboardSession
from sensor_dashboard.state import ChartPoint, DashboardSnapshot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/dashboard")


def _push(session: DashboardSession, payload: NotificationPayload) -> bool:
    session.push_notification(payload.message, payload.category, duration_seconds=payload.duration_seconds)
    return True


_HANDLERS: Dict[str, Tuple[Optional[TypeAdapter], Callable[[DashboardSession, Any], bool]]] = {
    "toggle_sidebar": (None, lambda session, _: session.toggle_sidebar()),
    "set_loading": (TypeAdapter(StrictBool), lambda session, value: session.set_loading(value)),
    "set_connection_status": (TypeAdapter(str), lambda session, value: session.set_connection_status(value)),
    "touch_last_update": (
        TypeAdapter(Optional[datetime]),
        lambda session, value: session.touch_last_update(value),
    ),
    "merge_sensor_data": (
        TypeAdapter(Dict[str, Dict[str, Any]]),
        lambda session, value: session.merge_sensor_data(value),
    ),
    "set_chart_series": (TypeAdapter(List[ChartPoint]), lambda session, value: session.set_chart_series(value)),
    "set_time_range": (TypeAdapter(str), lambda session, value: session.set_time_range(value)),
    "select_time_range": (TypeAdapter(str), lambda session, value: session.select_time_range(value)),
    "set_page": (TypeAdapter(StrictInt), lambda session, value: session.set_page(value)),
    "set_page_size": (TypeAdapter(StrictInt), lambda session, value: session.set_page_size(value)),
    "push_notification": (TypeAdapter(NotificationPayload), _push),
    "drop_notification": (TypeAdapter(str), lambda session, value: session.drop_notification(value)),
}


def _session(app) -> DashboardSession:
    session: DashboardSession | None = getattr(app.state, "session", None)
    if session is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Dashboard session not running")
    return session


def apply_transition(session: DashboardSession, name: str, value: Any) -> bool:
    """Validate ``value`` for the named trigger and invoke it; ValueError on bad input."""

    adapter, handler = _HANDLERS[name]
    if adapter is not None:
        try:
            value = adapter.validate_python(value)
        except ValidationError as exc:
            raise ValueError(f"invalid value for {name}: {exc.errors()[0].get('msg')}") from exc
    return handler(session, value)


def offer_latest(queue: asyncio.Queue, item: Any) -> None:
    """Replace whatever is still queued with ``item``; a slow client only gets the newest snapshot."""

    try:
        queue.get_nowait()
    except asyncio.QueueEmpty:
        pass
    queue.put_nowait(item)


@router.get("", response_model=DashboardSnapshot)
async def dashboard_snapshot(request: Request) -> DashboardSnapshot:
    return _session(request.app).snapshot


@router.post("/transitions", response_model=TransitionResult)
async def dashboard_transition(payload: TransitionRequest, request: Request) -> TransitionResult:
    session = _session(request.app)
    try:
        applied = apply_transition(session, payload.name, payload.value)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    logger.info("Transition %s applied=%s", payload.name, applied)
    return TransitionResult(name=payload.name, applied=applied, snapshot=session.snapshot)


@router.post("/refresh", response_model=RefreshResult)
async def dashboard_refresh(request: Request) -> RefreshResult:
    session = _session(request.app)
    if not await session.refresh():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Refresh already in progress")
    return RefreshResult(refreshed=True, snapshot=session.snapshot)


@router.delete("/notifications/{notification_id}", response_model=TransitionResult)
async def drop_notification(notification_id: str, request: Request) -> TransitionResult:
    session = _session(request.app)
    applied = session.drop_notification(notification_id)
    return TransitionResult(name="drop_notification", applied=applied, snapshot=session.snapshot)


@router.websocket("/stream")
async def dashboard_stream(websocket: WebSocket) -> None:
    session = _session(websocket.app)
    await websocket.accept()
    loop = asyncio.get_running_loop()
    updates: asyncio.Queue[DashboardSnapshot] = asyncio.Queue(maxsize=1)

    def _listener(snapshot: DashboardSnapshot) -> None:
        loop.call_soon_threadsafe(offer_latest, updates, snapshot)

    async def _forward() -> None:
        await websocket.send_json(session.snapshot.model_dump(mode="json"))
        while True:
            snapshot = await updates.get()
            await websocket.send_json(snapshot.model_dump(mode="json"))

    unsubscribe = session.subscribe(_listener)
    sender = asyncio.create_task(_forward(), name="dashboard-stream")
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
