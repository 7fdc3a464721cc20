"""FastAPI application exposing the dashboard session to remote clients."""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI

from sensor_dashboard.config import get_settings
from sensor_dashboard.observability import configure_observability
from sensor_dashboard.routers import dashboard as dashboard_router
from sensor_dashboard.routers import status as status_router
from sensor_dashboard.services.session import DashboardSession

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    session = DashboardSession(settings.dashboard)
    session.start()
    app.state.session = session
    app.state.started_at = time.monotonic()
    logger.info("Dashboard session started for %s", settings.service_name)
    try:
        yield
    finally:
        session: DashboardSession | None = getattr(app.state, "session", None)
        if session:
            await session.stop()
        logger.info("Dashboard session stopped")


settings = get_settings()
app = FastAPI(title="Sensor Dashboard", version=settings.service_version, lifespan=lifespan)
configure_observability(
    app,
    service_name=settings.service_name,
    log_level=settings.log_level,
    log_format=settings.log_format,
)
app.include_router(status_router.router)
app.include_router(dashboard_router.router)


def run() -> None:  # pragma: no cover
    import uvicorn

    current = get_settings()
    uvicorn.run("sensor_dashboard.main:app", host=current.http_host, port=current.http_port)


if __name__ == "__main__":  # pragma: no cover
    run()
