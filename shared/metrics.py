"""
Shared metrics configuration for the query cache.
"""

import threading
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server


class QueryCacheMetrics:
    """Prometheus metrics for one query client.

    Each collector owns its registry unless one is passed in, so several
    clients in one process never register the same metric name twice.
    """

    def __init__(self, namespace: str = "query_cache", registry: Optional[CollectorRegistry] = None):
        self.namespace = namespace
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up query cache metrics."""
        self._metrics["fetches_total"] = Counter(
            "fetches_total",
            "Total fetcher executions by outcome",
            ["outcome"],
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["fetch_retries_total"] = Counter(
            "fetch_retries_total",
            "Total fetch retry attempts",
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["dedup_joins_total"] = Counter(
            "dedup_joins_total",
            "Fetch requests served by an already in-flight request",
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["cache_hits_total"] = Counter(
            "cache_hits_total",
            "Fetch decisions answered by fresh cached data",
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["evictions_total"] = Counter(
            "evictions_total",
            "Entries removed by the eviction timer",
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["mutations_total"] = Counter(
            "mutations_total",
            "Total mutations by outcome",
            ["outcome"],
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["entries"] = Gauge(
            "entries",
            "Number of cache entries",
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["inflight_requests"] = Gauge(
            "inflight_requests",
            "Number of in-flight fetch requests",
            namespace=self.namespace,
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def start_metrics_server(self, port: int = 9090):
        """Start the Prometheus metrics server for this registry."""
        start_http_server(port, registry=self.registry)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            if labels:
                metric.labels(**labels).inc()
            else:
                metric.inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            if labels:
                metric.labels(**labels).set(value)
            else:
                metric.set(value)

    def sample(self, metric_name: str, **labels) -> float:
        """Read the current value of a metric sample (0.0 when never recorded)."""
        suffix = "_total" if metric_name.endswith("_total") else ""
        base = metric_name[:-len("_total")] if suffix else metric_name
        value = self.registry.get_sample_value(f"{self.namespace}_{base}{suffix}", labels or None)
        return value or 0.0

