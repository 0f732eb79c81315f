"""
Request timing middleware.

One log line per API request with method, path, status and duration. Action
requests carry the case id so a case's HTTP traffic can be followed next to
its transition and scanner log lines.

Response headers: X-Request-ID (echoed or generated), X-Request-Duration-Ms.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

_QUIET_PATHS = frozenset({"/api/v1/health"})

SLOW_REQUEST_MS = 1000


def _level_for(status_code: int, duration_ms: float) -> int:
    if status_code >= 500:
        return logging.ERROR
    if duration_ms > SLOW_REQUEST_MS:
        return logging.WARNING
    return logging.DEBUG


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _log_request(response):
        started = getattr(g, "request_start", None)
        if started is None:
            return response

        duration_ms = (time.perf_counter() - started) * 1000
        request_id = getattr(g, "request_id", "")
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = request_id

        if request.path in _QUIET_PATHS:
            return response

        logger.log(
            _level_for(response.status_code, duration_ms),
            "%s %s -> %d (%.0fms)",
            request.method, request.path, response.status_code, duration_ms,
            extra={
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": duration_ms,
                "remote_addr": request.remote_addr,
                "request_id": request_id,
                "case_id": (request.view_args or {}).get("case_id"),
            },
        )
        return response
