"""
Prometheus metrics for application monitoring.
"""
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.openmetrics.exposition import generate_latest as generate_latest_openmetrics
from fastapi import Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
import time


# Request metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Inventory metrics
stock_ledger_entries_total = Counter(
    'stock_ledger_entries_total',
    'Stock ledger entries appended',
    ['reason']
)

# Reservation metrics
reservations_created_total = Counter(
    'reservations_created_total',
    'Inventory reservations created'
)

reservations_confirmed_total = Counter(
    'reservations_confirmed_total',
    'Inventory reservations confirmed'
)

reservations_released_total = Counter(
    'reservations_released_total',
    'Inventory reservations released',
    ['reason']
)

insufficient_stock_total = Counter(
    'insufficient_stock_total',
    'Requests rejected for insufficient stock',
    ['stage']
)

# Checkout metrics
checkout_sessions_total = Counter(
    'checkout_sessions_total',
    'Checkout sessions by resulting status',
    ['status']
)

sweep_duration_seconds = Histogram(
    'sweep_duration_seconds',
    'Background sweep duration in seconds',
    ['sweep'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0]
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP request metrics."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        # Skip metrics endpoint itself
        if request.url.path == "/metrics":
            return await call_next(request)

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.time() - start_time
            # Route template (resolved during dispatch) keeps ids out of label values
            route = request.scope.get("route")
            endpoint = getattr(route, "path", None) or request.url.path

            http_requests_total.labels(
                method=request.method,
                endpoint=endpoint,
                status_code=status_code
            ).inc()

            http_request_duration_seconds.labels(
                method=request.method,
                endpoint=endpoint
            ).observe(duration)

        return response


def get_metrics_response(openmetrics: bool = False) -> Response:
    """
    Get Prometheus metrics response.

    Args:
        openmetrics: If True, return OpenMetrics format, else Prometheus format

    Returns:
        Response with metrics data
    """
    if openmetrics:
        content = generate_latest_openmetrics()
        content_type = "application/openmetrics-text; version=1.0.0; charset=utf-8"
    else:
        content = generate_latest()
        content_type = CONTENT_TYPE_LATEST

    return Response(content=content, media_type=content_type)
