"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing, tenant and actor, and records the
request metrics.
"""
import time
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from orderflow.routes.metrics import track_request

logger = structlog.get_logger()


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds request_id, tenant_id, actor_id, route, duration_ms and status to every
    log line, and echoes the request id back in X-Request-ID.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()
        structlog.contextvars.clear_contextvars()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            self._logger(request).error(
                "request_failed",
                status_code=500,
                duration_ms=round(duration * 1000, 2),
                error=str(e)
            )
            track_request(request.method, self._endpoint(request), 500, duration)
            raise

        duration = time.perf_counter() - start_time

        # tenant/actor are set on request.state by the auth dependency
        self._logger(request).info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )
        track_request(request.method, self._endpoint(request), response.status_code, duration)

        response.headers["X-Request-ID"] = request_id
        return response

    @staticmethod
    def _endpoint(request: Request) -> str:
        # Route template keeps label cardinality bounded
        route = request.scope.get("route")
        return getattr(route, "path", request.url.path)

    @staticmethod
    def _logger(request: Request):
        tenant_id = getattr(request.state, "tenant_id", None)
        actor_id = getattr(request.state, "actor_id", None)
        return logger.bind(
            tenant_id=str(tenant_id) if tenant_id else None,
            actor_id=str(actor_id) if actor_id else None,
            route=request.url.path,
            method=request.method,
        )
