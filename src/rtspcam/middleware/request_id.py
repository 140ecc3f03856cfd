"""Request ID middleware for status API request correlation.

Assigns a UUID4 to each request (or keeps a client-provided one) and
echoes it in the X-Request-ID response header.

Logging Strategy:
    DEBUG - Request ID generation, client-provided IDs, request/response lines
    WARN  - Client errors (4xx) with duration
    ERROR - Server errors (5xx), unhandled exceptions with stack trace
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

# ============================================================================
# Request ID Middleware
# ============================================================================

class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add a request ID to each status API request.

    Args:
        app: ASGI application
        header_name: HTTP header name for request ID (default: X-Request-ID)
    """

    def __init__(
        self,
        app: ASGIApp,
        header_name: str = "X-Request-ID"
    ) -> None:
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get(self.header_name)
        if request_id:
            logger.debug(f"Using client-provided request ID: {request_id}")
        else:
            request_id = str(uuid.uuid4())

        request.state.request_id = request_id
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                f"Request {request_id} failed after {duration*1000:.2f}ms: "
                f"{type(e).__name__}: {e}",
                exc_info=True,
                extra={"request_id": request_id}
            )
            raise

        response.headers[self.header_name] = request_id
        self._log_response(request, response, request_id, time.time() - start_time)
        return response

    def _log_response(
        self,
        request: Request,
        response: Response,
        request_id: str,
        duration: float
    ) -> None:
        """Monitoring probes poll often, so successes log at DEBUG."""
        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.DEBUG

        duration_ms = duration * 1000
        logger.log(
            log_level,
            f"{request.method} {request.url.path} {status} ({duration_ms:.2f}ms)",
            extra={
                "request_id": request_id,
                "status_code": status,
                "duration_ms": round(duration_ms, 2)
            }
        )
