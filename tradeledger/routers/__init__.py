"""
TradeLedger API Routers
"""

from .admin import router as admin_router
from .api_keys import router as api_keys_router
from .auth import router as auth_router
from .health import router as health_router
from .platforms import router as platforms_router
from .sub_accounts import router as sub_accounts_router
from .trading_logs import router as trading_logs_router
from .transactions import router as transactions_router
from .users import router as users_router

__all__ = [
    "admin_router",
    "api_keys_router",
    "auth_router",
    "health_router",
    "platforms_router",
    "sub_accounts_router",
    "trading_logs_router",
    "transactions_router",
    "users_router",
]
