"""Security middleware and rate limiting."""

import logging
import time
from typing import Callable

from fastapi import Request, Response
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Per-client limits for the routes that touch credits or the generation backend
SESSION_RATE_LIMIT = "20/minute"
CHAT_RATE_LIMIT = "30/minute"
PURCHASE_RATE_LIMIT = "10/minute"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'self'",
}


def get_client_ip(request: Request) -> str:
    """Best-effort client address behind a proxy; used as the rate-limit key."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # First hop is the client
        return forwarded.split(",")[0].strip()

    return request.headers.get("X-Real-IP") or get_remote_address(request) or "unknown"


limiter = Limiter(key_func=get_client_ip)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds SECURITY_HEADERS to every HTTP response. WebSocket traffic is not touched."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One log line per HTTP request, levelled by status code.

    Bodies are never logged; they carry user questions.
    """

    QUIET_PATHS = {"/health", "/", "/favicon.ico"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        if request.url.path in self.QUIET_PATHS:
            return response

        elapsed_ms = (time.perf_counter() - started) * 1000
        status = response.status_code
        level = logging.ERROR if status >= 500 else logging.WARNING if status >= 400 else logging.INFO
        logger.log(
            level,
            f"{request.method} {request.url.path} -> {status} "
            f"in {elapsed_ms:.1f}ms from {get_client_ip(request)}",
        )
        return response
