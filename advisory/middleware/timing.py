"""
Request timing middleware.

Every response carries ``X-Request-ID`` (echoed from the request when given)
and ``X-Request-Duration-Ms``. Slow requests and 5xx responses are logged
with the project/client ids taken from the route.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

_PROBE_PATHS = frozenset({"/api/v1/health/ready", "/api/v1/health/live"})

# Intake and execution run the LLM pipeline inside the request
SLOW_THRESHOLD_MS = 1000
SLOW_PIPELINE_THRESHOLD_MS = 60_000
_PIPELINE_ENDPOINTS = frozenset({"consulting.start_project", "consulting.execute_project"})


def _slow_threshold() -> int:
    if request.endpoint in _PIPELINE_ENDPOINTS:
        return SLOW_PIPELINE_THRESHOLD_MS
    return SLOW_THRESHOLD_MS


def _log_extra(response, duration_ms: float) -> dict:
    view_args = request.view_args or {}
    return {
        "method": request.method,
        "path": request.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
        "remote_addr": request.remote_addr,
        "request_id": g.get("request_id", ""),
        "project_id": view_args.get("project_id"),
        "client_id": view_args.get("client_id"),
    }


def init_request_timing(app: Flask):
    """Register the before/after request hooks."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _stamp_response(response):
        start = g.get("request_start")
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = g.get("request_id", "")
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        if request.path in _PROBE_PATHS:
            return response

        summary = "%s %s -> %d in %.0fms"
        args = (request.method, request.path, response.status_code, duration_ms)
        extra = _log_extra(response, duration_ms)
        if response.status_code >= 500:
            logger.error("Server error: " + summary, *args, extra=extra)
        elif duration_ms > _slow_threshold():
            logger.warning("Slow request: " + summary, *args, extra=extra)
        else:
            logger.debug(summary, *args, extra=extra)
        return response
