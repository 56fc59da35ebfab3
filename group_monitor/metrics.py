"""
Prometheus metrics for the group monitor.

This module provides:
- HTTP request counter (method, path, status)
- Ingestion outcome counter (result)
- Connection phase transition counter (phase)
- Request latency histogram (method, path)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Ingestion outcome counter
# result: created, duplicate, self_originated, invalid, error
ingestion_outcomes_total = Counter(
    "ingestion_outcomes_total",
    "Total inbound message ingestion outcomes",
    labelnames=["result"]
)

# Phase entered on each lifecycle transition
connection_phase_transitions_total = Counter(
    "connection_phase_transitions_total",
    "Connection lifecycle transitions by target phase",
    labelnames=["phase"]
)

# Request latency histogram in seconds, default buckets
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
    # (e.g., /api/messages?limit=50 -> /api/messages)
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_ingestion_outcome(result: str) -> None:
    """
    Record an ingestion outcome.

    Args:
        result: Processing result - one of:
            - "created": New message stored
            - "duplicate": Source message id already stored
            - "self_originated": Sent by the monitored account
            - "invalid": No usable conversation id, or not a group
            - "error": Storing the message failed
    """
    ingestion_outcomes_total.labels(result=result).inc()


def record_phase_transition(phase: str) -> None:
    """
    Record entry into a connection phase.

    Args:
        phase: Name of the phase entered, e.g. "Connected"
    """
    connection_phase_transitions_total.labels(phase=phase).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
