"""
Request timing & correlation middleware.

Every API response carries X-Request-ID (echoed from the caller or
generated) and X-Request-Duration-Ms. The acting user (X-User-Id) is
copied onto ``g`` so service logs can be correlated with the caller.

State-changing workflow calls are logged at INFO, reads at DEBUG, and
anything slower than SLOW_REQUEST_MS at WARNING.
"""

import logging
import time
import uuid

from flask import Flask, current_app, g, request

logger = logging.getLogger(__name__)

_HEALTH_PREFIX = "/api/v1/health"
_MUTATING = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def _request_extra(response, duration_ms: float) -> dict:
    return {
        "method": request.method,
        "path": request.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
        "remote_addr": request.remote_addr,
        "request_id": g.get("request_id", ""),
        "user_id": g.get("acting_user_id"),
    }


def init_request_timing(app: Flask):
    """Register before/after hooks for request correlation and timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        g.acting_user_id = request.headers.get("X-User-Id")

    @app.after_request
    def _log_request(response):
        start = g.get("request_start")
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = g.get("request_id", "")

        if request.path.startswith(_HEALTH_PREFIX) or not request.path.startswith("/api/"):
            return response

        extra = _request_extra(response, duration_ms)
        slow_ms = current_app.config.get("SLOW_REQUEST_MS", 1000)
        summary = (request.method, request.path, response.status_code, duration_ms)
        if response.status_code >= 500:
            logger.error("Server error: %s %s %d (%.0fms)", *summary, extra=extra)
        elif duration_ms > slow_ms:
            logger.warning("Slow request: %s %s %d (%.0fms)", *summary, extra=extra)
        elif request.method in _MUTATING:
            logger.info("%s %s %d (%.0fms)", *summary, extra=extra)
        else:
            logger.debug("%s %s %d (%.0fms)", *summary, extra=extra)
        return response
