"""
Request middleware: request id, admin identity and latency per route.
"""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from tourbooking.core.logging import get_logger
from tourbooking.core.metrics import record_http_request

logger = get_logger(__name__)

QUIET_PATHS = frozenset({"/health", "/metrics"})


def route_template(request: Request) -> str:
    """`/api/v1/bookings/{reference}` rather than the concrete path, to bound label cardinality."""
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Binds request_id (the caller's X-Request-ID when present) and the
    X-Admin-Id header to every log line of the request, so a booking's
    history rows can be traced back to the admin call that wrote them.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        started = time.perf_counter()

        structlog.contextvars.clear_contextvars()
        context = {"request_id": request_id, "method": request.method, "path": request.url.path}
        admin_id = request.headers.get("X-Admin-Id")
        if admin_id:
            context["admin_id"] = admin_id
        structlog.contextvars.bind_contextvars(**context)

        try:
            response = await call_next(request)
        except Exception as e:
            elapsed = time.perf_counter() - started
            record_http_request(request.method, route_template(request), 500, elapsed)
            logger.error("request_failed", error=str(e), duration_ms=round(elapsed * 1000, 2))
            raise

        elapsed = time.perf_counter() - started
        record_http_request(request.method, route_template(request), response.status_code, elapsed)
        if request.url.path not in QUIET_PATHS:
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_ms=round(elapsed * 1000, 2),
            )

        response.headers["X-Request-ID"] = request_id
        return response
