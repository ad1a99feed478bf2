"""System monitoring module.

Provides the Prometheus metrics endpoint and health probes.
"""

from app.modules.system_monitoring.router import router as system_monitoring_router

__all__ = ["system_monitoring_router"]
