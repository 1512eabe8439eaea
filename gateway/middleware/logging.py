"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and context, and records the
Prometheus request metrics.
"""
import time
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from gateway.routes.metrics import track_request

logger = structlog.get_logger()


def _route_template(request: Request) -> str:
    """Route pattern (e.g. /api/webhooks/{webhook_id}) to keep metric labels bounded."""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: owner_id, route, duration_ms, status to every log.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        request_logger = logger.bind(
            route=request.url.path,
            method=request.method,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            request_logger.error(
                "request_failed",
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e)
            )
            track_request(request.method, _route_template(request), 500, duration_ms / 1000)
            raise

        duration_ms = (time.time() - start_time) * 1000

        # Set by get_current_user once the caller is identified
        owner_id = getattr(request.state, "owner_id", None)

        request_logger.info(
            "request_completed",
            owner_id=owner_id,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2)
        )
        track_request(request.method, _route_template(request), response.status_code, duration_ms / 1000)

        return response
