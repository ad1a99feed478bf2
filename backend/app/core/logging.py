"""Structured logging.

Every record is tagged with the request's correlation id and, while a
compression job runs, its job id, so the lines of concurrent jobs sharing
one process can be told apart. In JSON mode the active trace and span ids
are added too.
"""

import json
import logging
import sys
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from app.core.tracing import current_trace_ids

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)

# Whatever a bare LogRecord carries; the rest came in through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "correlation_id",
    "job_id",
}

# Libraries that log every request or connection at INFO
_QUIET_LOGGERS = ("uvicorn.access", "botocore", "boto3", "urllib3", "s3transfer")


def get_correlation_id() -> str:
    """Correlation id of the current request.

    Outside a request the trace id is used if a span is active; failing
    that a fresh id is generated and kept for the rest of the context.
    """
    cid = correlation_id_var.get()
    if cid is not None:
        return cid
    trace_id, _ = current_trace_ids()
    if trace_id:
        return trace_id
    cid = str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[None]:
    token = correlation_id_var.set(correlation_id)
    try:
        yield
    finally:
        correlation_id_var.reset(token)


def get_job_id() -> Optional[str]:
    return job_id_var.get()


@contextmanager
def job_context(job_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``job_id``."""
    token = job_id_var.set(job_id)
    try:
        yield
    finally:
        job_id_var.reset(token)


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, include_stack_trace: bool = True):
        super().__init__()
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": get_correlation_id(),
            "location": f"{record.pathname}:{record.lineno}",
        }

        job_id = get_job_id()
        if job_id:
            entry["job_id"] = job_id

        trace_id, span_id = current_trace_ids()
        if trace_id:
            entry["trace_id"] = trace_id
            entry["span_id"] = span_id

        exc_type, exc_value, exc_tb = record.exc_info or (None, None, None)
        if exc_type is not None and self.include_stack_trace:
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
            }

        extra = {
            key: _json_safe(value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS
        }
        if extra:
            entry["extra"] = extra

        return json.dumps(entry, default=str)


class ContextFilter(logging.Filter):
    """Expose the correlation and job ids to plain-text format strings."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id()
        record.job_id = get_job_id() or "-"
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_stack_trace: bool = True,
) -> None:
    """Replace the root handlers with a single stdout handler.

    Args:
        level: Root log level name
        json_format: Emit JSON instead of a one-line text format
        include_stack_trace: Include tracebacks in JSON records
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter(include_stack_trace=include_stack_trace))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] [job %(job_id)s] %(message)s"
        ))

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
