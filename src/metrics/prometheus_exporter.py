"""Prometheus metrics for the dispatch engine.

Metrics live on a private registry so embedding applications can choose
whether and where to expose them.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

# Use a separate registry to avoid default Python metrics
REGISTRY = CollectorRegistry()

# --- Counters (cumulative values) ---

dispatch_rides_booked_total = Counter(
    "dispatch_rides_booked_total",
    "Total number of rides booked",
    registry=REGISTRY,
)

dispatch_transitions_total = Counter(
    "dispatch_transitions_total",
    "Committed ride status transitions by target status",
    ["status"],
    registry=REGISTRY,
)

dispatch_accept_total = Counter(
    "dispatch_accept_total",
    "Accept attempts by outcome",
    ["outcome"],
    registry=REGISTRY,
)

dispatch_matches_proposed_total = Counter(
    "dispatch_matches_proposed_total",
    "Rides moved to matched by the matcher",
    registry=REGISTRY,
)

dispatch_reconciliation_fixes_total = Counter(
    "dispatch_reconciliation_fixes_total",
    "Driver availability corrections by kind",
    ["kind"],
    registry=REGISTRY,
)

dispatch_publish_errors_total = Counter(
    "dispatch_publish_errors_total",
    "Broadcast failures by backend and error type",
    ["backend", "error_type"],
    registry=REGISTRY,
)

dispatch_errors_total = Counter(
    "dispatch_errors_total",
    "Engine call failures by error code",
    ["code"],
    registry=REGISTRY,
)

# --- Gauges (point-in-time values) ---

dispatch_matching_loop_running = Gauge(
    "dispatch_matching_loop_running",
    "1 while the background matcher thread is alive",
    registry=REGISTRY,
)

# --- Histograms (latency distributions) ---

PUBLISH_LATENCY_BUCKETS = (0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, float("inf"))
MATCH_CYCLE_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, float("inf"))

dispatch_publish_latency_seconds = Histogram(
    "dispatch_publish_latency_seconds",
    "Broadcast publish latency in seconds",
    ["backend"],
    buckets=PUBLISH_LATENCY_BUCKETS,
    registry=REGISTRY,
)

dispatch_match_cycle_seconds = Histogram(
    "dispatch_match_cycle_seconds",
    "Duration of one matcher cycle in seconds",
    buckets=MATCH_CYCLE_BUCKETS,
    registry=REGISTRY,
)


def observe_latency(backend: str, latency_ms: float) -> None:
    """Observe a publish latency sample in milliseconds."""
    dispatch_publish_latency_seconds.labels(backend=backend).observe(latency_ms / 1000.0)


def record_error(code: str) -> None:
    dispatch_errors_total.labels(code=code).inc()


def generate_prometheus_metrics() -> bytes:
    """Generate Prometheus format metrics output.

    Returns:
        Prometheus text format as bytes
    """
    result: bytes = generate_latest(REGISTRY)
    return result
