"""
TradeLedger Auth Package
OAuth drivers, JWT handling and the login flows.
"""

from .jwt_handler import JWTHandler, TokenPair
from .oauth import (
    GoogleOAuthHandler,
    OAuthDriver,
    OAuthManager,
    OAuthTokens,
    OAuthUserInfo,
    WeChatOAuthHandler,
)
from .service import AuthService

__all__ = [
    "AuthService",
    "JWTHandler",
    "TokenPair",
    "OAuthDriver",
    "OAuthManager",
    "OAuthTokens",
    "OAuthUserInfo",
    "GoogleOAuthHandler",
    "WeChatOAuthHandler",
]
