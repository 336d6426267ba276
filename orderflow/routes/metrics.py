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
# Business Metrics - Orders
# ============================================

orders_placed = Counter(
    'orders_placed_total',
    'Total orders placed',
    ['tenant_id', 'delivery_type']
)

order_transitions = Counter(
    'order_transitions_total',
    'Total order status transitions',
    ['tenant_id', 'to_status']
)

orders_auto_accepted = Counter(
    'orders_auto_accepted_total',
    'Total orders auto-accepted by the sweeper',
    ['tenant_id']
)

# ============================================
# Webhook Metrics
# ============================================

webhook_deliveries = Counter(
    'webhook_deliveries_total',
    'Total webhook delivery attempts',
    ['tenant_id', 'status']
)

webhook_delivery_duration = Histogram(
    'webhook_delivery_duration_seconds',
    'Webhook delivery round-trip in seconds',
    ['status'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Called by the logging middleware after each request.
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


def track_order_placed(tenant_id: str, delivery_type: str):
    """Record an order being placed."""
    orders_placed.labels(tenant_id=tenant_id, delivery_type=delivery_type).inc()


def track_order_transition(tenant_id: str, to_status: str):
    """Record a committed status transition."""
    order_transitions.labels(tenant_id=tenant_id, to_status=to_status).inc()


def track_auto_accepted(tenant_id: str):
    """Record an order auto-accepted by the sweeper."""
    orders_auto_accepted.labels(tenant_id=tenant_id).inc()


def track_webhook_delivery(tenant_id: str, status: str, duration_seconds: float):
    """Record one webhook delivery attempt and its latency."""
    webhook_deliveries.labels(tenant_id=tenant_id, status=status).inc()
    webhook_delivery_duration.labels(status=status).observe(duration_seconds)


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
