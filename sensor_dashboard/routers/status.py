from __future__ import annotations

import time
from typing import Dict

from fastapi import APIRouter, Depends, Request

from sensor_dashboard import build_info
from sensor_dashboard.config import Settings, get_settings

router = APIRouter(prefix="/v1")


@router.get("/status")
async def status_endpoint(request: Request, settings: Settings = Depends(get_settings)) -> Dict[str, object]:
    uptime = int(time.monotonic() - getattr(request.app.state, "started_at", time.monotonic()))
    session = getattr(request.app.state, "session", None)
    snapshot = session.snapshot if session else None
    return {
        "service_name": settings.service_name,
        "service_version": settings.service_version,
        "build_flavor": build_info.BUILD_FLAVOR,
        "uptime_seconds": uptime,
        "mqtt_host": settings.mqtt_host,
        "mqtt_port": settings.mqtt_port,
        "connection_status": snapshot.connection_status if snapshot else None,
        "loading": snapshot.loading if snapshot else None,
        "notifications": len(snapshot.notifications) if snapshot else 0,
    }
