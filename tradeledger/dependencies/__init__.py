"""
TradeLedger Dependencies Package
"""

from .auth import (
    Caller,
    api_key_header,
    get_current_caller,
    http_bearer,
    require_admin,
    require_permission,
    require_session,
)

__all__ = [
    "Caller",
    "get_current_caller",
    "require_permission",
    "require_admin",
    "require_session",
    "http_bearer",
    "api_key_header",
]
