"""
Prometheus metrics for the bank token service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Aggregator webhook outcome counter (event_type, result)
- Oracle sync outcome counter (trigger, outcome)
- Conversation turn counter (state, result)
- Token deployment counter (mode, result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: processed, ignored, invalid_signature, validation_error, error
aggregator_webhook_total = Counter(
    "aggregator_webhook_total",
    "Total bank aggregator webhook outcomes",
    labelnames=["event_type", "result"]
)

# trigger: webhook, poll
oracle_sync_total = Counter(
    "oracle_sync_total",
    "Total oracle balance sync attempts by outcome",
    labelnames=["trigger", "outcome"]
)

conversation_turns_total = Counter(
    "conversation_turns_total",
    "Total conversation turns by starting state",
    labelnames=["state", "result"]
)

# mode: live, synthetic
token_deployments_total = Counter(
    "token_deployments_total",
    "Total token deployments",
    labelnames=["mode", "result"]
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
    # Token addresses would make path labels unbounded
    normalized_path = path.split("?")[0]
    if normalized_path.startswith("/api/connect-bank/"):
        normalized_path = "/api/connect-bank/{tokenAddress}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(event_type: str, result: str) -> None:
    aggregator_webhook_total.labels(event_type=event_type, result=result).inc()


def record_oracle_sync(trigger: str, outcome: str) -> None:
    oracle_sync_total.labels(trigger=trigger, outcome=outcome).inc()


def record_conversation_turn(state: str, result: str) -> None:
    conversation_turns_total.labels(state=state, result=result).inc()


def record_deployment(mode: str, result: str) -> None:
    token_deployments_total.labels(mode=mode, result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
