"""
Shared metrics configuration for the Patient EHR Access Layer.
"""

from typing import Dict, Any, Optional
import threading

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # Own registry per collector so several services (or tests) can coexist in one process
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
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

        self._setup_cache_metrics()
        self._setup_outbound_metrics()

    def _setup_cache_metrics(self):
        """Set up cache metrics, labelled by namespace."""
        self._metrics["cache_hits_total"] = Counter(
            "cache_hits_total",
            "Total cache hits",
            ["namespace"],
            registry=self.registry
        )

        self._metrics["cache_misses_total"] = Counter(
            "cache_misses_total",
            "Total cache misses",
            ["namespace"],
            registry=self.registry
        )

        self._metrics["cache_evictions_total"] = Counter(
            "cache_evictions_total",
            "Entries evicted because a namespace was full",
            ["namespace"],
            registry=self.registry
        )

        self._metrics["cache_invalidations_total"] = Counter(
            "cache_invalidations_total",
            "Entries removed by explicit invalidation",
            ["namespace"],
            registry=self.registry
        )

    def _setup_outbound_metrics(self):
        """Set up metrics for calls to downstream services."""
        self._metrics["outbound_requests_total"] = Counter(
            "outbound_requests_total",
            "Total outbound HTTP requests",
            ["method", "outcome"],
            registry=self.registry
        )

        self._metrics["outbound_retries_total"] = Counter(
            "outbound_retries_total",
            "Total outbound HTTP retries",
            ["method"],
            registry=self.registry
        )

        self._metrics["outbound_deduplicated_total"] = Counter(
            "outbound_deduplicated_total",
            "Outbound calls served by joining an in-flight request",
            ["method"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record an inbound HTTP request."""
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
        """Record a health check."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str):
        """Record an error."""
        self._metrics["errors_total"].labels(error_type=error_type, service=self.service_name).inc()

    def record_cache_access(self, namespace: str, hit: bool):
        """Record a cache lookup."""
        name = "cache_hits_total" if hit else "cache_misses_total"
        self._metrics[name].labels(namespace=namespace).inc()

    def record_cache_eviction(self, namespace: str):
        """Record a capacity eviction."""
        self._metrics["cache_evictions_total"].labels(namespace=namespace).inc()

    def record_cache_invalidation(self, namespace: str, count: int = 1):
        """Record explicitly invalidated entries."""
        if count > 0:
            self._metrics["cache_invalidations_total"].labels(namespace=namespace).inc(count)

    def record_outbound_request(self, method: str, outcome: str):
        """Record an outbound request attempt outcome."""
        self._metrics["outbound_requests_total"].labels(method=method.upper(), outcome=outcome).inc()

    def record_outbound_retry(self, method: str):
        """Record an outbound retry."""
        self._metrics["outbound_retries_total"].labels(method=method.upper()).inc()

    def record_outbound_deduplicated(self, method: str):
        """Record a caller that joined an in-flight request."""
        self._metrics["outbound_deduplicated_total"].labels(method=method.upper()).inc()

    def render(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)


_collectors: Dict[str, MetricsCollector] = {}
_collectors_lock = threading.Lock()


def get_metrics_collector(service_name: str) -> MetricsCollector:
    """Get or create the metrics collector for a service."""
    with _collectors_lock:
        if service_name not in _collectors:
            _collectors[service_name] = MetricsCollector(service_name)
        return _collectors[service_name]
