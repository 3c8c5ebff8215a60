"""
Relay metrics, registered in the Prometheus global REGISTRY on import.
"""

from prometheus_client import Counter, Gauge, Histogram

SUBMISSIONS_TOTAL = Counter(
    "relay_submissions_total",
    "Submissions received, by outcome",
    ["outcome"],
)

DISPATCH_TOTAL = Counter(
    "relay_dispatch_total",
    "Ledger delivery attempts, by source and outcome",
    ["source", "outcome"],
)

DISPATCH_LATENCY_SECONDS = Histogram(
    "relay_dispatch_latency_seconds",
    "Ledger store_batch latency in seconds",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

QUEUE_DEPTH = Gauge(
    "relay_queue_depth",
    "Retry queue entries, by state",
    ["state"],
)

DEAD_LETTERED_TOTAL = Counter(
    "relay_dead_lettered_total",
    "Entries moved to dead-letter, by reason",
    ["reason"],
)

QUEUE_PERSISTENCE_ERRORS_TOTAL = Counter(
    "relay_queue_persistence_errors_total",
    "Durable queue store failures",
    ["operation"],
)


class MetricsRegistry:
    """Centralized access to relay metrics."""

    submissions_total = SUBMISSIONS_TOTAL
    dispatch_total = DISPATCH_TOTAL
    dispatch_latency_seconds = DISPATCH_LATENCY_SECONDS
    queue_depth = QUEUE_DEPTH
    dead_lettered_total = DEAD_LETTERED_TOTAL
    queue_persistence_errors_total = QUEUE_PERSISTENCE_ERRORS_TOTAL


metrics_registry = MetricsRegistry()
