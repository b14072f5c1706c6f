"""
Structured logging for the Policy Resolution Service.

Loggers are named `<service>.<component>` (e.g. `policy.rate_limit`); every
event is rendered as one JSON line carrying the service, the component, the
active trace and the request correlation fields.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from opentelemetry import trace

# Correlation fields bound per request
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
admin_id_var: ContextVar[Optional[str]] = ContextVar("admin_id", default=None)
subject_var: ContextVar[Optional[str]] = ContextVar("subject", default=None)

_CORRELATION_FIELDS = (
    ("request_id", request_id_var),
    ("admin_id", admin_id_var),
    ("subject", subject_var),
)


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Route structlog through stdlib logging and render JSON to stdout."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            ServiceContext(service_name),
            add_trace_context,
            add_correlation_context,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class ServiceContext:
    """Adds `service` and `component`, derived from the logger name."""

    def __init__(self, service_name: str):
        self.service_name = service_name

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        service, _, component = event_dict.get("logger", "").partition(".")
        event_dict["service"] = self.service_name
        if component and service == self.service_name:
            event_dict["component"] = component
        return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the current OpenTelemetry trace and span ids."""
    span = trace.get_current_span()
    if span and span.is_recording():
        span_context = span.get_span_context()
        if span_context.trace_id != 0:
            event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        if span_context.span_id != 0:
            event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, var in _CORRELATION_FIELDS:
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id, generating one when the caller sent none."""
    request_id = request_id or str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_request_context(admin_id: Optional[str] = None, subject: Optional[str] = None) -> None:
    """Bind the acting admin and/or the policed subject for the rest of the request."""
    if admin_id:
        admin_id_var.set(admin_id)
    if subject:
        subject_var.set(subject)


def clear_context() -> None:
    for _, var in _CORRELATION_FIELDS:
        var.set(None)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
