"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Booking metrics
booking_attempts = Counter(
    'tour_booking_attempts_total',
    'Total booking attempts',
    ['origin', 'status']  # origin: online/manual, status: success, capacity, conflict, invalid, error
)

booking_latency = Histogram(
    'tour_booking_latency_seconds',
    'Booking transaction latency',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5]
)

seats_released = Counter(
    'tour_seats_released_total',
    'Seats returned to instance inventory',
    ['reason']  # payment_failed, refund, cancel
)

# Payment metrics
webhook_events = Counter(
    'stripe_webhook_events_total',
    'Stripe webhook deliveries by type and outcome',
    ['event_type', 'result']  # applied, ignored, unhandled, error
)

refund_requests = Counter(
    'refund_requests_total',
    'Refund issuance attempts',
    ['result']  # issued, failed
)

# Cache metrics
cache_operations = Counter(
    'cache_operations_total',
    'Cache operations',
    ['operation', 'result']  # get/set, hit/miss
)

# Rate limit metrics
rate_limit_decisions = Counter(
    'rate_limit_decisions_total',
    'Rate limiter decisions',
    ['bucket', 'result']  # allowed, blocked, error
)

# HTTP metrics
http_request_latency = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency by route template',
    ['method', 'route', 'status_class'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)


def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def record_booking_attempt(origin: str, status: str):
    """Record booking attempt. Status: success, capacity, conflict, invalid, error"""
    booking_attempts.labels(origin=origin, status=status).inc()


def record_seats_released(reason: str, seats: int):
    seats_released.labels(reason=reason).inc(seats)


def record_webhook_event(event_type: str, result: str):
    webhook_events.labels(event_type=event_type, result=result).inc()


def record_refund(issued: bool):
    refund_requests.labels(result="issued" if issued else "failed").inc()


def record_cache_operation(operation: str, hit: bool):
    """Record cache operation."""
    result = "hit" if hit else "miss"
    cache_operations.labels(operation=operation, result=result).inc()


def record_http_request(method: str, route: str, status_code: int, seconds: float):
    http_request_latency.labels(
        method=method, route=route, status_class=f"{status_code // 100}xx"
    ).observe(seconds)


def record_rate_limit_decision(bucket: str, result: str):
    rate_limit_decisions.labels(bucket=bucket, result=result).inc()
