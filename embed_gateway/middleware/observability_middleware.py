"""
Observability middleware: request ids and request metrics.
"""

from __future__ import annotations

import time
import uuid
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from ..services.observability import MetricsCollector


class RequestMetricsMiddleware(BaseHTTPMiddleware):
    """Tag every request with an id and record its latency and status."""

    def __init__(self, app: ASGIApp, metrics: MetricsCollector):
        super().__init__(app)
        self.metrics = metrics

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        request_id = (request.headers.get("x-request-id") or "").strip() or str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration_ms = (time.monotonic() - start_time) * 1000
            self.metrics.record_request(
                endpoint=f"{request.method} {request.url.path}",
                latency_ms=duration_ms,
                status=status_code,
            )

        response.headers["X-Request-ID"] = request_id
        return response


def request_id_from_request(request: Request) -> str | None:
    from_state = getattr(request.state, "request_id", None)
    if isinstance(from_state, str) and from_state.strip():
        return from_state.strip()
    from_header = (request.headers.get("x-request-id") or "").strip()
    return from_header or None
