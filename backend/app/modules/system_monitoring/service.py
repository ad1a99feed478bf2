"""System monitoring service.

Health checks for what a compression job needs locally: a writable temp
directory, an encoder binary and a configured storage backend.
"""

import os
import shutil
import time
import logging
from datetime import datetime, timezone

from app.core.config import Settings
from app.modules.system_monitoring.schemas import (
    SystemHealthResponse,
    ComponentHealth,
    HealthStatus,
)

logger = logging.getLogger(__name__)

# Track application start time for uptime calculation
_app_start_time = time.time()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SystemMonitoringService:
    """Service for health checks."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def get_system_health(self) -> SystemHealthResponse:
        """Get health status of every component.

        Returns:
            SystemHealthResponse with component health statuses
        """
        components = [
            self._check_temp_dir(),
            self._check_encoder(),
            self._check_storage(),
        ]

        return SystemHealthResponse(
            status=self._determine_overall_status(components),
            timestamp=_now(),
            version=self.settings.VERSION,
            uptime_seconds=time.time() - _app_start_time,
            components=components,
        )

    def _check_temp_dir(self) -> ComponentHealth:
        tmp_dir = self.settings.UPLOAD_TMP_DIR
        if os.path.isdir(tmp_dir) and os.access(tmp_dir, os.W_OK):
            return ComponentHealth(
                name="temp_dir",
                status=HealthStatus.HEALTHY,
                message="Temp directory writable",
                last_check=_now(),
                details={"path": tmp_dir},
            )

        logger.error(f"Temp directory not writable: {tmp_dir}")
        return ComponentHealth(
            name="temp_dir",
            status=HealthStatus.UNHEALTHY,
            message=f"Temp directory missing or not writable: {tmp_dir}",
            last_check=_now(),
        )

    def _check_encoder(self) -> ComponentHealth:
        found = {
            name: shutil.which(path)
            for name, path in (
                ("ffmpeg", self.settings.FFMPEG_PATH),
                ("ffprobe", self.settings.FFPROBE_PATH),
            )
        }

        if not found["ffmpeg"]:
            logger.error(f"Encoder binary not found: {self.settings.FFMPEG_PATH}")
            return ComponentHealth(
                name="encoder",
                status=HealthStatus.UNHEALTHY,
                message=f"ffmpeg not found: {self.settings.FFMPEG_PATH}",
                last_check=_now(),
            )

        # Without ffprobe encoding still works, only progress percentages are lost
        if not found["ffprobe"]:
            return ComponentHealth(
                name="encoder",
                status=HealthStatus.DEGRADED,
                message=f"ffprobe not found: {self.settings.FFPROBE_PATH}",
                last_check=_now(),
                details={"ffmpeg": found["ffmpeg"]},
            )

        return ComponentHealth(
            name="encoder",
            status=HealthStatus.HEALTHY,
            message="Encoder available",
            last_check=_now(),
            details=found,
        )

    def _check_storage(self) -> ComponentHealth:
        backend = self.settings.STORAGE_BACKEND.lower()
        details = {"backend": backend}

        if backend == "local":
            path = self.settings.LOCAL_STORAGE_PATH
            details["path"] = path
            healthy = os.path.isdir(path) and os.access(path, os.W_OK)
            message = "Local storage writable" if healthy else f"Local storage not writable: {path}"
        elif backend in ("s3", "minio", "aws", "supabase"):
            healthy = bool(self.settings.STORAGE_ENDPOINT_URL or backend in ("s3", "aws"))
            message = "Storage configured" if healthy else f"No endpoint configured for {backend}"
        else:
            healthy = False
            message = f"Unsupported storage backend: {backend}"

        return ComponentHealth(
            name="storage",
            status=HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY,
            message=message,
            last_check=_now(),
            details=details,
        )

    def _determine_overall_status(
        self, components: list[ComponentHealth]
    ) -> HealthStatus:
        """Worst component status wins."""
        if any(c.status == HealthStatus.UNHEALTHY for c in components):
            return HealthStatus.UNHEALTHY
        if any(c.status == HealthStatus.DEGRADED for c in components):
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY
