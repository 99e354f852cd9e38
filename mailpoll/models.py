"""Runtime status models for the poller service."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ServiceStatus(str, Enum):
    """Runtime status of a poller instance."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


class HealthStatus(BaseModel):
    """Response body for the health endpoint."""

    service_name: str
    status: ServiceStatus
    uptime_seconds: float = Field(ge=0)
    details: dict[str, Any] = Field(default_factory=dict)
