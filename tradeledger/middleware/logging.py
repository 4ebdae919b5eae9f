"""
TradeLedger Logging Middleware
Request logging and per-request structlog context.

Request and response bodies are never logged: they carry platform
credentials and freshly issued API keys.
"""

import time
import uuid
from typing import Callable, Dict, Iterable, Optional

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..config.settings import settings

logger = structlog.get_logger("tradeledger.api")

REDACTED = "***REDACTED***"
SENSITIVE_HEADERS = (
    "authorization", "x-api-key", "cookie", "set-cookie",
    "x-auth-token", "api-key", "password", "secret",
)
SLOW_REQUEST_MS = 1000


def sanitize_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Copy of ``headers`` with credential-bearing values replaced."""
    sanitized = {}
    for key, value in headers.items():
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_HEADERS):
            sanitized[key] = REDACTED
        else:
            sanitized[key] = value
    return sanitized


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log one event per request: method, path, status, duration.

    Level follows the outcome: error for 5xx, warning for 4xx and slow
    requests, info otherwise.
    """

    def __init__(self, app: ASGIApp, exclude_paths: Optional[Iterable[str]] = None):
        super().__init__(app)
        self.exclude_paths = tuple(exclude_paths or ("/health", "/docs", "/redoc", "/openapi.json"))

    def _should_log(self, path: str) -> bool:
        return not path.startswith(self.exclude_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        if not self._should_log(request.url.path):
            return await call_next(request)

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.exception(
                "request_failed",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 3),
                error=type(e).__name__,
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        event = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 3),
            "client_ip": client_ip(request),
        }
        user_id = getattr(request.state, "user_id", None)
        if user_id:
            event["user_id"] = user_id
        if settings.debug:
            event["headers"] = sanitize_headers(dict(request.headers))

        if response.status_code >= 500:
            logger.error("server_error", **event)
        elif response.status_code >= 400:
            logger.warning("client_error", **event)
        elif duration_ms > SLOW_REQUEST_MS:
            logger.warning("slow_request", **event)
        else:
            logger.info("request_completed", **event)

        response.headers["X-Request-ID"] = request_id
        return response


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Bind a correlation id, path and method into structlog context vars."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            request_path=request.url.path,
            request_method=request.method,
        )

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


__all__ = [
    "RequestLoggingMiddleware",
    "StructuredLoggingMiddleware",
    "sanitize_headers",
]
