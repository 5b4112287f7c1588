"""
Request context middleware for the case lifecycle API.

Establishes a correlation ID for every request (taken from the
X-Correlation-ID header or generated), binds it to the logging context for
the duration of the request, logs request completion with timing and echoes
the ID on the response.
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from backend.app.utils.logging import correlation_context, get_logger


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware to establish request context with correlation IDs and timing.

    Should be added last so that it wraps every other middleware.
    """

    def __init__(self, app: ASGIApp, slow_request_threshold_ms: float = 2000.0):
        super().__init__(app)
        self.slow_request_threshold_ms = slow_request_threshold_ms
        self.logger = get_logger("middleware.context")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = self._get_or_generate_correlation_id(request)
        request.state.correlation_id = correlation_id
        start_time = time.perf_counter()

        with correlation_context(correlation_id):
            try:
                response = await call_next(request)
            except Exception as exc:
                self.logger.error(
                    "Request processing failed",
                    method=request.method,
                    path=request.url.path,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise

            duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
            log = self.logger.warning if duration_ms > self.slow_request_threshold_ms else self.logger.info
            log(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                user_id=request.headers.get("x-user-id"),
            )

        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @staticmethod
    def _get_or_generate_correlation_id(request: Request) -> str:
        return request.headers.get("x-correlation-id") or str(uuid.uuid4())
