"""Tracing utilities built on OpenTelemetry."""

from typing import Optional
import os
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.asyncpg import AsyncPGInstrumentor
from opentelemetry.trace import Status, StatusCode


def configure_tracing(service_name: str, otel_exporter: Optional[str] = None, enable_console: bool = False) -> None:
    """Configure OpenTelemetry tracing for a service."""

    resource = Resource.create({
        "service.name": service_name,
        "service.version": "1.0.0",
        "service.namespace": "policy",
        "service.instance.id": os.getenv("HOSTNAME", "unknown"),
        "deployment.environment": os.getenv("POLICY_ENV", "development")
    })

    provider = TracerProvider(resource=resource)
    endpoint = otel_exporter or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{endpoint.rstrip('/')}/v1/traces")))

    if enable_console:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)

    FastAPIInstrumentor().instrument()
    RedisInstrumentor().instrument()
    AsyncPGInstrumentor().instrument()


def get_tracer(name: str):
    """Get a tracer instance."""
    return trace.get_tracer(name)


@contextmanager
def trace_operation(operation_name: str, **attributes):
    """Context manager to trace an operation."""
    tracer = get_tracer("policy")
    with tracer.start_as_current_span(operation_name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)

        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.set_attribute("error", True)
            span.set_attribute("error.message", str(exc))
            raise
