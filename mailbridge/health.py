"""Liveness and readiness probes served over HTTP."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .models import BridgeStatus, HealthStatus

if TYPE_CHECKING:
    from .service import BridgeService

_LIVE_STATUSES = (BridgeStatus.STARTING, BridgeStatus.RUNNING)


def create_health_app(service: BridgeService) -> FastAPI:
    """Build the probe app for *service*.

    ``/health`` is the liveness probe and reports counters and token state.
    ``/ready`` succeeds only while the bridge is running and its SMTP
    listener holds a bound socket.
    """
    app = FastAPI(title="mailbridge health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        body = HealthStatus(
            status=service.status,
            uptime_seconds=round(time.monotonic() - service.start_time, 3),
            details=service.health_details(),
        )
        return JSONResponse(
            content=body.model_dump(mode="json"),
            status_code=200 if service.status in _LIVE_STATUSES else 503,
        )

    @app.get("/ready")
    async def ready() -> JSONResponse:
        listening = service.smtp_listening
        is_ready = service.status == BridgeStatus.RUNNING and listening
        return JSONResponse(
            content={"ready": is_ready, "smtp_listening": listening},
            status_code=200 if is_ready else 503,
        )

    return app
