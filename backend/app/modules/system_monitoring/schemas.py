"""System monitoring schemas.

Pydantic models for health check responses.
"""

from datetime import datetime
from typing import Optional
from enum import Enum
from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    """Health status values."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentHealth(BaseModel):
    """Health status of a service dependency."""
    name: str = Field(..., description="Component name")
    status: HealthStatus = Field(..., description="Health status")
    message: Optional[str] = Field(None, description="Status message")
    last_check: datetime = Field(..., description="Last health check time")
    details: Optional[dict] = Field(None, description="Additional details")


class SystemHealthResponse(BaseModel):
    """System health response."""
    status: HealthStatus = Field(..., description="Overall service status")
    timestamp: datetime = Field(..., description="Check timestamp")
    version: str = Field(..., description="Application version")
    uptime_seconds: float = Field(..., description="Application uptime in seconds")
    components: list[ComponentHealth] = Field(..., description="Component health statuses")
