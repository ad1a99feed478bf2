"""Prometheus metrics for the compression service.

HTTP request metrics plus per-stage timings and outcomes of compression jobs.
"""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    multiprocess,
)
import os

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., with gunicorn)
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "video_compressor_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method"],
    registry=REGISTRY,
)


# ============================================
# Compression Pipeline Metrics
# ============================================
COMPRESSION_JOBS_TOTAL = Counter(
    "compression_jobs_total",
    "Compression jobs by terminal outcome",
    ["outcome"],
    registry=REGISTRY,
)

COMPRESSION_JOBS_IN_PROGRESS = Gauge(
    "compression_jobs_in_progress",
    "Compression jobs currently running",
    registry=REGISTRY,
)

COMPRESSION_STAGE_DURATION_SECONDS = Histogram(
    "compression_duration_seconds",
    "Duration of compression stages in seconds",
    ["stage"],
    buckets=[0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 900.0],
    registry=REGISTRY,
)

COMPRESSION_INPUT_SIZE_BYTES = Histogram(
    "compression_input_size_bytes",
    "Size of uploaded videos accepted for compression",
    buckets=[1e6, 5e6, 10e6, 25e6, 45e6, 75e6, 100e6, 150e6, 200e6],
    registry=REGISTRY,
)

COMPRESSION_RATIO = Histogram(
    "compression_ratio_percent",
    "Size reduction of published videos in percent",
    buckets=[0.0, 10.0, 25.0, 50.0, 60.0, 70.0, 80.0, 90.0, 95.0, 100.0],
    registry=REGISTRY,
)

TEMP_FILES_REMOVED_TOTAL = Counter(
    "temp_files_removed_total",
    "Temporary job files removed during cleanup",
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
