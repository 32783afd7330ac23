"""FastAPI health endpoints for the daemon (liveness and readiness)."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .models import DaemonStatus, HealthStatus

if TYPE_CHECKING:
    from .app import HomeMetricsApp


def create_health_app(daemon: HomeMetricsApp) -> FastAPI:
    """Build a minimal FastAPI app with ``/health`` and ``/ready`` routes.

    ``/health`` reports uptime, the last report of every stream and the
    session refresher's state; it answers 503 when the daemon is
    degraded (credentials exhausted) or shutting down.
    """
    app = FastAPI(title="homemetrics health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        status = HealthStatus(
            status=daemon.status,
            uptime_seconds=time.monotonic() - daemon.start_time,
            details=daemon.health_details(),
        )
        code = 200 if daemon.status in (DaemonStatus.RUNNING, DaemonStatus.STARTING) else 503
        return JSONResponse(content=status.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = daemon.status == DaemonStatus.RUNNING
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    return app
