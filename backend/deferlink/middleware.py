"""HTTP middleware: admission control and request logging.

Both are Starlette BaseHTTPMiddleware classes. Exceptions raised inside a
BaseHTTPMiddleware do not reach the application's exception handlers, so
the rate limiter renders its own 429 response from RateLimitedError.
"""

import asyncio
import logging
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .errors import RateLimitedError

logger = logging.getLogger(__name__)

API_PREFIX = "/api"


def client_key(request: Request) -> str:
    """Rate limit key: client address (X-Forwarded-For resolved by ProxyHeadersMiddleware)."""
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window admission control for every path under /api.

    The limiter is read from `app.state.services` per request and runs in a
    worker thread.
    """

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not (path == API_PREFIX or path.startswith(API_PREFIX + "/")):
            return await call_next(request)

        limiter = request.app.state.services.limiter
        try:
            # Redis limiter does blocking I/O; keep it off the event loop
            await asyncio.to_thread(limiter.enforce, client_key(request))
        except RateLimitedError as e:
            return JSONResponse(
                e.to_response(),
                status_code=e.status_code,
                headers={"Retry-After": str(e.retry_after)},
            )
        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs method, path, status and duration of every request."""

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"[HTTP] {request.method} {request.url.path} -> {response.status_code} ({duration_ms:.1f}ms)",
            extra={"client": client_key(request)},
        )
        return response
