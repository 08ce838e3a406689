"""
Prometheus metrics and the built-in health/metrics routes.

Metrics are process-wide, like the default prometheus_client registry they
live in. install_builtin_routes() exposes them on GET /metrics next to a
GET /health liveness check.
"""

"""
Copyright 2025 Chris Bunting
File: metrics.py | Purpose: Prometheus metrics and built-in routes
@author Chris Bunting | @version 1.0.0

CHANGELOG:
2025-08-28 - Chris Bunting: Split out of the server module, add pending metrics
2025-08-20 - Chris Bunting: Initial implementation
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

from ..core.models import Response

REQ_TOTAL = Counter("embedserver_requests_total", "Total HTTP requests")
REQ_ERRORS = Counter("embedserver_request_errors_total", "Requests answered with a 5xx status")
REQ_IN_FLIGHT = Gauge("embedserver_in_flight_requests", "Requests currently being handled")
REQ_LATENCY = Histogram("embedserver_request_duration_seconds", "Request duration seconds")
PENDING_OPERATIONS = Gauge("embedserver_pending_operations", "Parked requests awaiting completion")
PENDING_EXPIRED = Counter("embedserver_pending_expired_total", "Parked requests that timed out")
PENDING_SHUTDOWN = Counter("embedserver_pending_shutdown_total", "Parked requests answered 503 on shutdown")


def health(request):
    return Response.text("OK")


def metrics(request):
    return Response(200, [('Content-Type', CONTENT_TYPE_LATEST)], generate_latest())


def install_builtin_routes(table) -> None:
    """Register GET /health and GET /metrics on a route table."""
    table.register('GET', '/health', health)
    table.register('GET', '/metrics', metrics)
