"""FastAPI health endpoints for Kubernetes liveness and readiness probes."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .models import HealthStatus, ServiceStatus

if TYPE_CHECKING:
    from .service import PollerService


def create_health_app(service: PollerService) -> FastAPI:
    """Build a minimal FastAPI app with ``/health`` and ``/ready`` routes.

    ``/health`` answers 503 while the service is degraded, which is the
    case when the most recent pass recorded an account error.
    """
    app = FastAPI(title=f"{service.config.name} health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        status = HealthStatus(
            service_name=service.config.name,
            status=service.status,
            uptime_seconds=time.monotonic() - service.start_time,
            details=service.health_details(),
        )
        code = 200 if service.status in (ServiceStatus.RUNNING, ServiceStatus.STARTING) else 503
        return JSONResponse(content=status.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = service.status in (ServiceStatus.RUNNING, ServiceStatus.DEGRADED)
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    return app
