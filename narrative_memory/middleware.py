"""HTTP middleware for the Narrative Memory API.

Provides:
    - API key authentication (X-API-Key header)
    - Rate limiting (per-IP, in-memory sliding window)
    - Audit logging and request metrics
"""

from __future__ import annotations

import logging
import secrets
import time
from collections import defaultdict
from typing import Callable, Set

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .metrics import record_request_metric

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("audit")


def _client_ip(request: Request, default: str = "unknown") -> str:
    return request.client.host if request.client else default


# ---------------------------------------------------------------------------
# API Key Authentication
# ---------------------------------------------------------------------------

class APIKeyMiddleware(BaseHTTPMiddleware):
    """Require a matching X-API-Key header on all non-exempt paths."""

    EXEMPT_PATHS: Set[str] = {"/v1/health", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, api_key: str):
        super().__init__(app)
        self.api_key = api_key

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        key = request.headers.get("X-API-Key", "")
        if not key or not secrets.compare_digest(key, self.api_key):
            audit_logger.warning("AUTH_FAIL ip=%s path=%s", _client_ip(request), request.url.path)
            return JSONResponse(status_code=401, content={"error": "Invalid or missing API key"})

        return await call_next(request)


# ---------------------------------------------------------------------------
# Rate Limiting
# ---------------------------------------------------------------------------

class RateLimitMiddleware(BaseHTTPMiddleware):
    """Simple sliding-window rate limiter (per-IP, in-memory)."""

    def __init__(self, app, max_requests: int = 120, window_seconds: int = 60):
        super().__init__(app)
        self.max_requests = max_requests
        self.window = window_seconds
        self._hits: dict[str, list[float]] = defaultdict(list)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        client_ip = _client_ip(request, default="0.0.0.0")
        now = time.time()

        hits = [t for t in self._hits[client_ip] if now - t < self.window]
        self._hits[client_ip] = hits

        if len(hits) >= self.max_requests:
            audit_logger.warning(
                "RATE_LIMIT ip=%s path=%s count=%d", client_ip, request.url.path, len(hits),
            )
            return JSONResponse(
                status_code=429,
                content={"error": "Rate limit exceeded"},
                headers={"Retry-After": str(self.window)},
            )

        hits.append(now)
        return await call_next(request)


# ---------------------------------------------------------------------------
# Audit Logging
# ---------------------------------------------------------------------------

class AuditLogMiddleware(BaseHTTPMiddleware):
    """Log every request and record its latency."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.time()
        response = await call_next(request)
        elapsed = time.time() - start

        # Route template keeps metric cardinality bounded (/v1/memories/{fact_id})
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)

        record_request_metric(
            method=request.method,
            path=path,
            status=response.status_code,
            duration_seconds=elapsed,
        )
        audit_logger.info(
            "method=%s path=%s status=%d ip=%s elapsed_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            _client_ip(request),
            elapsed * 1000,
        )
        return response
