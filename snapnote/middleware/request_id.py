"""
SnapNote — Request ID Middleware
=================================

What:  Assigns a correlation ID to each request and echoes it back in the
       X-Request-ID response header.
How:   Uses the client's X-Request-ID when present, otherwise a short
       UUID. The ID is stored in a ContextVar (for loggers and exception
       handlers) and on request.state (for route handlers).
Who:   Every request; registered last so it runs first.

Error bodies carry the same ID, so a user reporting a failed capture or
model download can be matched to the server log lines for that request.
"""

import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests share a thread but not this value
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        request_id_var.set(rid)
        request.state.request_id = rid

        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response
