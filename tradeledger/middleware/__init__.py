"""
TradeLedger Middleware Package
"""

from .logging import RequestLoggingMiddleware, StructuredLoggingMiddleware, sanitize_headers

__all__ = [
    "RequestLoggingMiddleware",
    "StructuredLoggingMiddleware",
    "sanitize_headers",
]
