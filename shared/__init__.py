"""
Shared utilities for the Policy Resolution Service.

This package aggregates common building blocks:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- tracing: OpenTelemetry tracing config
- errors: Canonical error types and responses
- retry: Backoff for store connections
- base_service: FastAPI service shell

Do not import from service_* packages into shared/.
"""
