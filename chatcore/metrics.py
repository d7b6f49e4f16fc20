"""
Prometheus metrics for the delivery core.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Message send outcome counter (result)
- Persistence retry counter
- Presence transition counter (state)
- Active subscription gauge (kind)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: sent, invalid_participant, empty_body, conversation_not_found,
# persistence_unavailable
messages_sent_total = Counter(
    "messages_sent_total",
    "Message send outcomes",
    labelnames=["result"]
)

persistence_retries_total = Counter(
    "persistence_retries_total",
    "Failed message persistence attempts that were retried"
)

presence_transitions_total = Counter(
    "presence_transitions_total",
    "Presence transitions by target state",
    labelnames=["state"]
)

# kind: conversation, conversation_list, presence
active_subscriptions = Gauge(
    "active_subscriptions",
    "Currently registered subscriptions",
    labelnames=["kind"]
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


def record_send_outcome(result: str) -> None:
    messages_sent_total.labels(result=result).inc()


def record_persistence_retry() -> None:
    persistence_retries_total.inc()


def record_presence_transition(state: str) -> None:
    presence_transitions_total.labels(state=state).inc()


def subscription_opened(kind: str) -> None:
    active_subscriptions.labels(kind=kind).inc()


def subscription_released(kind: str) -> None:
    active_subscriptions.labels(kind=kind).dec()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
