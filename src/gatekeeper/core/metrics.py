"""
Prometheus metrics collection.

In-memory counters; Prometheus handles storage. Each collector owns its
registry so several apps (and tests) can coexist in one process.
"""

from typing import Optional

import structlog
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, Info

logger = structlog.get_logger(__name__)


class MetricsCollector:
    """
    Centralized metrics collection for Gatekeeper.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else REGISTRY

        # Service info
        self.service_info = Info(
            "gatekeeper_service",
            "Gatekeeper service information",
            registry=self.registry,
        )
        self.service_info.info({
            "version": "0.1.0",
            "service": "gatekeeper",
        })

        # Request metrics
        self.requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry,
        )

        self.request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry,
        )

        # Admission metrics
        self.admission_decisions_total = Counter(
            "admission_decisions_total",
            "Rate limiter decisions",
            ["result"],
            registry=self.registry,
        )

        # Computation cache metrics
        self.cache_lookups_total = Counter(
            "computation_cache_lookups_total",
            "Computation cache lookups by outcome",
            ["result"],
            registry=self.registry,
        )

        self.producer_failures_total = Counter(
            "computation_cache_producer_failures_total",
            "Producer invocations that failed",
            registry=self.registry,
        )

        self.computations_in_flight = Gauge(
            "computation_cache_in_flight",
            "Keys currently being computed",
            registry=self.registry,
        )

        self.store_errors_total = Counter(
            "store_unavailable_total",
            "Backing store operations that failed",
            ["component"],
            registry=self.registry,
        )

        # Logger metrics
        self.log_records_total = Counter(
            "log_records_total",
            "Log records accepted by the fan-out logger",
            ["severity"],
            registry=self.registry,
        )

        self.sink_failures_total = Counter(
            "log_sink_failures_total",
            "Log sink write failures",
            ["sink"],
            registry=self.registry,
        )

        logger.info("Metrics collector initialized")

    def record_request(self, method: str, endpoint: str, status_code: int, duration_seconds: float) -> None:
        """Record HTTP request metrics."""
        self.requests_total.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration_seconds)

    def record_admission(self, result: str) -> None:
        """Record a rate limiter decision."""
        self.admission_decisions_total.labels(result=result).inc()

    def record_cache_lookup(self, result: str) -> None:
        """Record how a computation cache lookup was served."""
        self.cache_lookups_total.labels(result=result).inc()

    def record_producer_failure(self) -> None:
        self.producer_failures_total.inc()

    def record_store_error(self, component: str) -> None:
        self.store_errors_total.labels(component=component).inc()

    def record_log(self, severity: str) -> None:
        self.log_records_total.labels(severity=severity).inc()

    def record_sink_failure(self, sink: str) -> None:
        """Record a failed sink write."""
        self.sink_failures_total.labels(sink=sink).inc()
