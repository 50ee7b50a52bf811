"""
Structured JSON request logging middleware.

Every request/response cycle is logged as a single structured event
containing method, path, status code, duration and a unique request id.
The request id is also bound to the logging context, so log lines emitted
by the services while handling the request carry it too.
"""

from __future__ import annotations

import time
import uuid
from typing import Any

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from infrastructure.observability.logging_config import get_logger, log_context

logger: structlog.stdlib.BoundLogger = get_logger("cost_sentinel.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every HTTP request/response with structured JSON fields.

    Captured fields:
        - ``request_id``  -- unique UUID for the request (or the caller's
          ``X-Request-ID``)
        - ``method``      -- HTTP method
        - ``path``        -- request path (query string is dropped; it may
          carry the scheduler secret)
        - ``status_code`` -- response status
        - ``duration_ms`` -- wall-clock duration in milliseconds
        - ``client_ip``   -- client IP address
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()

        with log_context(request_id=request_id):
            try:
                response: Response = await call_next(request)
            except Exception:
                duration_ms = round((time.perf_counter() - start) * 1000, 2)
                self._log_request(
                    request=request,
                    request_id=request_id,
                    status_code=500,
                    duration_ms=duration_ms,
                    level="error",
                )
                raise

            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            response.headers["X-Request-ID"] = request_id

            level = "info" if response.status_code < 400 else "warning"
            if response.status_code >= 500:
                level = "error"

            self._log_request(
                request=request,
                request_id=request_id,
                status_code=response.status_code,
                duration_ms=duration_ms,
                level=level,
            )

        return response

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _log_request(
        *,
        request: Request,
        request_id: str,
        status_code: int,
        duration_ms: float,
        level: str = "info",
    ) -> None:
        event_data: dict[str, Any] = {
            "request_id": request_id,
            "method": request.method,
            "path": str(request.url.path),
            "status_code": status_code,
            "duration_ms": duration_ms,
            "client_ip": request.client.host if request.client else None,
        }

        log_method = getattr(logger, level, logger.info)
        log_method("http_request", **event_data)
