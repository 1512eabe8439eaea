"""
Prometheus metrics endpoint.

Exposes system metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# API Key Metrics
# ============================================

api_keys_created = Counter(
    'api_keys_created_total',
    'Total API keys issued'
)

api_keys_revoked = Counter(
    'api_keys_revoked_total',
    'Total API keys revoked'
)

rate_limit_exceeded = Counter(
    'api_key_rate_limit_exceeded_total',
    'Total requests blocked by per-key rate limiting'
)

# ============================================
# Webhook Delivery Metrics
# ============================================

deliveries_enqueued = Counter(
    'webhook_deliveries_enqueued_total',
    'Total webhook deliveries recorded in the ledger',
    ['event']
)

delivery_attempts = Counter(
    'webhook_delivery_attempts_total',
    'Webhook delivery attempts by outcome',
    ['event', 'outcome']
)

sweep_duration = Histogram(
    'webhook_sweep_duration_seconds',
    'Duration of a pending-retry sweep',
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

sweep_rows = Counter(
    'webhook_sweep_rows_total',
    'Rows handled by pending-retry sweeps',
    ['result']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_api_key_created():
    """Record an API key being issued."""
    api_keys_created.inc()


def track_api_key_revoked():
    """Record an API key being revoked."""
    api_keys_revoked.inc()


def track_rate_limit_exceeded():
    """Record a rate limit block. The key itself is logged, not labelled."""
    rate_limit_exceeded.inc()


def track_delivery_enqueued(event: str):
    """Record a delivery row being created."""
    deliveries_enqueued.labels(event=event).inc()


def track_delivery_attempt(event: str, outcome: str):
    """Record one delivery attempt (delivered, retry_scheduled, failed)."""
    delivery_attempts.labels(event=event, outcome=outcome).inc()


def track_sweep(duration_seconds: float, processed: int, skipped: int):
    """Record a completed sweep."""
    sweep_duration.observe(duration_seconds)
    sweep_rows.labels(result="processed").inc(processed)
    sweep_rows.labels(result="skipped").inc(skipped)


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
