"""
FastAPI middleware for observability.

Provides:
- Request correlation ID injection
- Request/response logging with timing
"""
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ordersync.observability import correlation_context, get_logger

logger = get_logger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    1. Assigns correlation ID to each request
    2. Logs request start/end with timing
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        with correlation_context(request.headers.get("X-Request-ID")) as correlation_id:
            start_time = time.perf_counter()
            method = request.method
            path = request.url.path

            # Skip logging for health checks to reduce noise
            is_health_check = path == "/api/health"

            if not is_health_check:
                logger.info(f"Request started: {method} {path}", extra={"method": method, "path": path})

            try:
                response = await call_next(request)
            except Exception as e:
                duration_ms = (time.perf_counter() - start_time) * 1000
                logger.error(
                    f"Request failed: {method} {path}",
                    extra={"method": method, "path": path, "duration_ms": round(duration_ms, 2), "error": str(e)},
                )
                raise

            duration_ms = (time.perf_counter() - start_time) * 1000
            response.headers["X-Request-ID"] = correlation_id
            response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

            if not is_health_check:
                level_name = "info" if response.status_code < 400 else "warning"
                getattr(logger, level_name)(
                    f"Request completed: {method} {path}",
                    extra={
                        "method": method,
                        "path": path,
                        "status_code": response.status_code,
                        "duration_ms": round(duration_ms, 2),
                    },
                )

            return response
