"""
SnapNote — Middleware Package
==============================

Middleware Chain:
    Request → [Request ID] → [Logging] → [GZip] → [CORS] → Route Handler

The request ID is set before the access log line is written, so both the
log and the error body carry the same correlation ID.
"""
