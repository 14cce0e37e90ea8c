"""
API Middleware.

Request ID injection, rate limiting, and structured access logging
for every incoming request.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from carecall.logging_config import get_logger, trace_id_var, generate_trace_id

logger = get_logger(__name__)

# In-memory rate limiter, per process
_rate_counts: dict[str, list[float]] = defaultdict(list)
RATE_LIMIT_WINDOW = 60  # seconds
RATE_LIMIT_MAX = 100    # requests per window per IP

# Webhook senders redeliver on 429, so they are never throttled
RATE_LIMIT_EXEMPT_PREFIXES = ("/webhooks/",)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request ID as the trace id for every log line of the request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", generate_trace_id())
        token = trace_id_var.set(request_id)
        start = time.monotonic()

        try:
            response = await call_next(request)
            elapsed_ms = round((time.monotonic() - start) * 1000, 1)

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time-Ms"] = str(elapsed_ms)

            logger.info(
                "api_request",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                elapsed_ms=elapsed_ms,
            )
            return response
        finally:
            trace_id_var.reset(token)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window limiter per client IP for the operations API."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith(RATE_LIMIT_EXEMPT_PREFIXES):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.time()

        _rate_counts[client_ip] = [
            t for t in _rate_counts[client_ip]
            if now - t < RATE_LIMIT_WINDOW
        ]

        if len(_rate_counts[client_ip]) >= RATE_LIMIT_MAX:
            logger.warning("rate_limit_exceeded", client_ip=client_ip, path=request.url.path)
            return Response(
                content='{"error": "Rate limit exceeded"}',
                status_code=429,
                media_type="application/json",
                headers={"Retry-After": str(RATE_LIMIT_WINDOW)},
            )

        _rate_counts[client_ip].append(now)
        return await call_next(request)
