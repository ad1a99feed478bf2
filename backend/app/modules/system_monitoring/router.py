"""System monitoring API router.

Exposes the Prometheus metrics endpoint and health probes.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from app.core.metrics import get_metrics, get_content_type
from app.modules.system_monitoring.schemas import SystemHealthResponse, HealthStatus
from app.modules.system_monitoring.service import SystemMonitoringService

router = APIRouter(tags=["system-monitoring"])


def get_monitoring_service(request: Request) -> SystemMonitoringService:
    return SystemMonitoringService(request.app.state.settings)


@router.get(
    "/metrics",
    response_class=PlainTextResponse,
    summary="Prometheus metrics endpoint",
)
async def get_prometheus_metrics() -> Response:
    """Get Prometheus metrics.

    Includes HTTP request metrics, compression job outcomes, stage
    durations and compression ratios.
    """
    return Response(
        content=get_metrics(),
        media_type=get_content_type(),
    )


@router.get(
    "/health",
    response_model=SystemHealthResponse,
    summary="Service health check",
)
async def get_system_health(
    service: SystemMonitoringService = Depends(get_monitoring_service),
) -> SystemHealthResponse:
    """Health of the temp directory, the encoder and the storage backend."""
    return service.get_system_health()


@router.get("/health/ready", summary="Readiness probe")
async def readiness_probe(
    service: SystemMonitoringService = Depends(get_monitoring_service),
):
    """Returns 200 once the service can accept compression jobs."""
    health = service.get_system_health()

    if health.status != HealthStatus.UNHEALTHY:
        return {"status": "ready"}

    return JSONResponse(content={"status": "not_ready"}, status_code=503)


@router.get("/health/live", summary="Liveness probe")
async def liveness_probe() -> dict:
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}
