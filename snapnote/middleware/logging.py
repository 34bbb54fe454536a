"""
SnapNote — Request Logging Middleware
======================================

What:  One access-log line per request: method, path, status, duration,
       request ID and client address.
How:   Level follows the status class (5xx ERROR, 4xx WARNING, else INFO).
       /health and the frequently polled model status endpoint are not
       logged.
Who:   Every request, after RequestIDMiddleware has set the ID.

Not logged: request bodies (uploaded images), form fields, auth headers.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from snapnote.middleware.request_id import request_id_var

logger = logging.getLogger("snapnote.access")

QUIET_PATHS = frozenset({"/health", "/api/models/status"})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Typical durations:
        GET  /api/models/status      1-5ms
        POST /api/capture            0.5-5s (OCR passes, plus AI enhancement)
        POST /api/models/{id}/initialize  returns immediately (202)
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in QUIET_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        client_ip = getattr(request.client, "host", "unknown") if request.client else "unknown"
        rid = request_id_var.get("")

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            "%s %s %d %.1fms [%s] from %s",
            request.method,
            path,
            status,
            duration_ms,
            rid,
            client_ip,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )
        return response
