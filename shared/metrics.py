"""
Shared metrics configuration for the Policy Resolution Service.
"""

from typing import Dict, Any, Optional
import time
import threading
from contextlib import contextmanager

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector for services.

    Metrics are only exported when a registry is supplied, so several
    collectors can coexist in one process (tests build a fresh service each).
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_policy_metrics()

    def _setup_policy_metrics(self):
        """Set up policy-engine metrics."""
        self._metrics["policy_decisions_total"] = Counter(
            "policy_decisions_total",
            "Policy decisions by check type",
            ["check", "decision"],
            registry=self.registry
        )

        self._metrics["policy_check_duration_seconds"] = Histogram(
            "policy_check_duration_seconds",
            "Policy check duration in seconds",
            ["check"],
            registry=self.registry
        )

        self._metrics["rate_limit_violations_total"] = Counter(
            "rate_limit_violations_total",
            "Rate limit violations recorded",
            ["rule_id"],
            registry=self.registry
        )

        self._metrics["policy_cache_events_total"] = Counter(
            "policy_cache_events_total",
            "Policy cache hits, misses and invalidations",
            ["namespace", "result"],
            registry=self.registry
        )

        self._metrics["policy_store_failures_total"] = Counter(
            "policy_store_failures_total",
            "Checks decided without their store, by failure mode",
            ["check", "mode"],
            registry=self.registry
        )

        self._metrics["policy_cache_entries"] = Gauge(
            "policy_cache_entries",
            "Entries currently held in the policy cache",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_decision(self, check: str, allowed: bool, duration: Optional[float] = None):
        """Record the outcome of a policy check."""
        self._metrics["policy_decisions_total"].labels(
            check=check,
            decision="allow" if allowed else "deny"
        ).inc()
        if duration is not None:
            self._metrics["policy_check_duration_seconds"].labels(check=check).observe(duration)

    def record_violation(self, rule_id: str):
        """Record a rate limit violation."""
        self._metrics["rate_limit_violations_total"].labels(rule_id=rule_id).inc()

    def record_cache_event(self, namespace: str, result: str):
        """Record a cache hit/miss/invalidation."""
        self._metrics["policy_cache_events_total"].labels(namespace=namespace, result=result).inc()

    def record_fail_open(self, check: str):
        """Record a check allowed because its store was unavailable."""
        self._metrics["policy_store_failures_total"].labels(check=check, mode="open").inc()

    def record_fail_closed(self, check: str):
        """Record a check denied because its store was unavailable."""
        self._metrics["policy_store_failures_total"].labels(check=check, mode="closed").inc()

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.time()
        try:
            yield
        finally:
            duration = time.time() - start_time
            if operation_name in self._metrics:
                self._metrics[operation_name].labels(**labels).observe(duration)

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            if labels:
                metric = metric.labels(**labels)
            metric.set(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
