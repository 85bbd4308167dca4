"""
RouteGuard Backend — Access Log Middleware
============================================

What:  One log line per request: method, path, status, duration, request
       ID, matched route name and client IP.
How:   Level follows the status class (5xx ERROR, 4xx WARNING, else INFO).
       The route name and resolved client IP are set on request.state by
       the pipeline; unrouted requests log "-" and the socket peer.
       /health is skipped.

What is NOT logged: bodies, query strings, Authorization headers.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from routeguard.middleware.request_id import request_id_var

logger = logging.getLogger("routeguard.access")

SKIP_PATHS = frozenset({"/health"})


class AccessLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in SKIP_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        peer = request.client.host if request.client else "unknown"
        client_ip = getattr(request.state, "client_ip", peer)
        route_name = getattr(request.state, "route_name", "-")
        rid = request_id_var.get("")

        logger.log(
            log_level,
            "%s %s %d %.1fms [%s] route=%s from %s",
            request.method,
            path,
            status,
            duration_ms,
            rid,
            route_name,
            client_ip,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "route_name": route_name,
                "client_ip": client_ip,
            },
        )
        return response
