"""OpenTelemetry tracing for requests and compression stages.

Each HTTP request gets one server span. The encode and upload stages of a
compression job run in child spans tagged with the job id, so a slow
response can be attributed to the encoder or to the storage round-trip.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, SpanKind, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "app.compression"

_provider: Optional[TracerProvider] = None


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False,
) -> None:
    """Install the process-wide tracer provider.

    OpenTelemetry accepts a global provider only once, so later calls,
    including ones after ``shutdown_tracing``, keep the first provider.

    Args:
        service_name: Name reported as ``service.name``
        service_version: Version reported as ``service.version``
        environment: Deployment environment
        otlp_endpoint: OTLP gRPC collector, spans are not exported when unset
        enable_console_export: Also print finished spans to stdout
    """
    global _provider

    if _provider is not None:
        return

    _provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": environment,
    }))

    if otlp_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:
            logger.warning("OTLP exporter not installed, spans will not be exported")
        else:
            _provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
            logger.info(f"Exporting spans to {otlp_endpoint}")

    if enable_console_export:
        _provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(_provider)
    set_global_textmap(TraceContextTextMapPropagator())
    logger.info(f"Tracing initialized for {service_name} v{service_version}")


def shutdown_tracing() -> None:
    """Flush and stop the span processors."""
    if _provider is not None:
        _provider.shutdown()


def current_trace_ids() -> tuple[Optional[str], Optional[str]]:
    """Trace and span id of the active span as hex, or ``(None, None)``."""
    ctx = trace.get_current_span().get_span_context()
    if not ctx.is_valid:
        return None, None
    return format(ctx.trace_id, "032x"), format(ctx.span_id, "016x")


def mark_failed(span: Span, error: BaseException) -> None:
    span.record_exception(error)
    span.set_status(Status(StatusCode.ERROR, str(error) or type(error).__name__))


@contextmanager
def traced(
    name: str,
    attributes: Optional[dict] = None,
    kind: SpanKind = SpanKind.INTERNAL,
) -> Iterator[Span]:
    """Run the block inside a span; an escaping exception marks it failed.

    ``BaseException`` is included so a cancelled job still closes its span
    with an error status.
    """
    tracer = trace.get_tracer(INSTRUMENTATION_NAME)
    with tracer.start_as_current_span(
        name,
        kind=kind,
        attributes=attributes or {},
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except BaseException as e:
            mark_failed(span, e)
            raise


def stage_span(stage: str, job_id: str, attributes: Optional[dict] = None):
    """Span for one stage of a compression job, named ``compression.<stage>``."""
    return traced(
        f"compression.{stage}",
        attributes={"job.id": job_id, "job.stage": stage, **(attributes or {})},
    )
