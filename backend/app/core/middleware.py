"""HTTP middleware.

``RequestContextMiddleware`` gives each request a correlation id, a server
span and a completion log line. A handler that starts a compression job
stores it on ``request.state.compression_job``; the job id, the stage the
job ended in and the upload size are then attached to the span and the log
line, and the job id is returned in ``X-Job-ID``.
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from opentelemetry.trace import SpanKind
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import correlation_scope
from app.core.metrics import (
    HTTP_REQUESTS_TOTAL,
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_PROGRESS,
)
from app.core.tracing import traced

CORRELATION_ID_HEADER = "X-Correlation-ID"
JOB_ID_HEADER = "X-Job-ID"

request_logger = logging.getLogger("app.requests")


def _route_template(request: Request) -> str:
    """Matched route path, so metrics are labelled per endpoint and not per URL."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


def _job_fields(request: Request) -> dict:
    job = getattr(request.state, "compression_job", None)
    if job is None:
        return {}
    fields = {
        "job.id": job.job_id,
        "job.stage": job.stage.value,
        "job.input_bytes": job.input_size,
        "storage.bucket": job.bucket,
    }
    if job.failed_stage is not None:
        fields["job.failed_stage"] = job.failed_stage.value
    return fields


class MetricsMiddleware(BaseHTTPMiddleware):
    """Request counts and latencies per route template."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        in_progress = HTTP_REQUESTS_IN_PROGRESS.labels(method=request.method)
        in_progress.inc()
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            in_progress.dec()
            endpoint = _route_template(request)
            HTTP_REQUEST_DURATION_SECONDS.labels(
                method=request.method, endpoint=endpoint
            ).observe(time.perf_counter() - started)
            HTTP_REQUESTS_TOTAL.labels(
                method=request.method, endpoint=endpoint, status_code=str(status_code)
            ).inc()


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Correlation id, server span and completion log for each request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_ID_HEADER) or str(uuid.uuid4())
        started = time.perf_counter()

        with correlation_scope(correlation_id), traced(
            f"{request.method} {request.url.path}",
            attributes={
                "http.method": request.method,
                "http.target": request.url.path,
                "http.request_content_length": int(request.headers.get("content-length") or 0),
                "correlation_id": correlation_id,
            },
            kind=SpanKind.SERVER,
        ) as span:
            try:
                response = await call_next(request)
            except Exception:
                request_logger.exception(
                    "Request failed",
                    extra={
                        "method": request.method,
                        "path": request.url.path,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                        **_job_fields(request),
                    },
                )
                raise

            job_fields = _job_fields(request)
            span.set_attribute("http.status_code", response.status_code)
            span.set_attributes(job_fields)

            response.headers[CORRELATION_ID_HEADER] = correlation_id
            if job_fields:
                response.headers[JOB_ID_HEADER] = job_fields["job.id"]

            request_logger.info(
                f"{request.method} {request.url.path} -> {response.status_code}",
                extra={
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    **job_fields,
                },
            )
            return response


__all__ = [
    "CORRELATION_ID_HEADER",
    "JOB_ID_HEADER",
    "MetricsMiddleware",
    "RequestContextMiddleware",
]
