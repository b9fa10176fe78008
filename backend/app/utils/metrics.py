"""Prometheus metrics for the data-access layer."""

from prometheus_client import Counter, Histogram

# Store verb metrics
store_operation_latency_ms = Histogram(
    "store_operation_latency_ms",
    "Document store operation latency in milliseconds",
    ["verb", "outcome"],
    buckets=[1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500],
)

store_operation_errors_total = Counter(
    "store_operation_errors_total",
    "Total document store operation errors",
    ["verb"],
)

# Query engine metrics
query_filter_fallbacks_total = Counter(
    "query_filter_fallbacks_total",
    "Malformed structured filters degraded to override-only filtering",
    ["entity"],
)

# Lifecycle hooks
lifecycle_hook_failures_total = Counter(
    "lifecycle_hook_failures_total",
    "Lifecycle hook listener failures",
    ["listener"],
)


class PrometheusStoreMetrics:
    """Prometheus-based store metrics implementation."""

    def record_latency(self, verb: str, outcome: str, latency_ms: float) -> None:
        """Record store operation latency."""
        store_operation_latency_ms.labels(verb=verb, outcome=outcome).observe(latency_ms)

    def inc_error(self, verb: str) -> None:
        """Increment error counter."""
        store_operation_errors_total.labels(verb=verb).inc()

    def inc_filter_fallback(self, entity: str) -> None:
        """Increment malformed-filter fallback counter."""
        query_filter_fallbacks_total.labels(entity=entity).inc()

    def inc_hook_failure(self, listener: str) -> None:
        """Increment lifecycle hook failure counter."""
        lifecycle_hook_failures_total.labels(listener=listener).inc()


metrics = PrometheusStoreMetrics()
