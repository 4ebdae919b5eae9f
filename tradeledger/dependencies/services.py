"""
TradeLedger Service Dependencies
FastAPI providers for the services; tests override the leaf providers.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..api_keys.manager import APIKeyManager
from ..auth.jwt_handler import JWTHandler
from ..auth.oauth import OAuthManager
from ..auth.service import AuthService
from ..database.connection import get_session_maker
from ..security.crypto import CryptoEnvelope, get_crypto_envelope
from ..services.platforms import PlatformService
from ..services.sub_accounts import SubAccountService
from ..services.transactions import TransactionService
from ..services.users import UserService
from ..trading_logs.service import TradingLogService

_oauth_manager = None
_jwt_handler = None


# ============================================================================
# Leaf providers
# ============================================================================

def get_envelope() -> CryptoEnvelope:
    return get_crypto_envelope()


def get_oauth_manager() -> OAuthManager:
    global _oauth_manager
    if _oauth_manager is None:
        _oauth_manager = OAuthManager()
    return _oauth_manager


def get_jwt_handler() -> JWTHandler:
    global _jwt_handler
    if _jwt_handler is None:
        _jwt_handler = JWTHandler()
    return _jwt_handler


# ============================================================================
# Services
# ============================================================================

def get_api_key_manager(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    envelope: CryptoEnvelope = Depends(get_envelope),
) -> APIKeyManager:
    return APIKeyManager(session_maker, envelope)


def get_auth_service(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    oauth: OAuthManager = Depends(get_oauth_manager),
    jwt_handler: JWTHandler = Depends(get_jwt_handler),
    envelope: CryptoEnvelope = Depends(get_envelope),
) -> AuthService:
    return AuthService(session_maker, oauth, jwt_handler, envelope)


def get_user_service(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> UserService:
    return UserService(session_maker)


def get_platform_service(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    envelope: CryptoEnvelope = Depends(get_envelope),
) -> PlatformService:
    return PlatformService(session_maker, envelope)


def get_sub_account_service(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> SubAccountService:
    return SubAccountService(session_maker)


def get_transaction_service(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> TransactionService:
    return TransactionService(session_maker)


def get_trading_log_service(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> TradingLogService:
    return TradingLogService(session_maker)


__all__ = [
    "get_envelope",
    "get_oauth_manager",
    "get_jwt_handler",
    "get_api_key_manager",
    "get_auth_service",
    "get_user_service",
    "get_platform_service",
    "get_sub_account_service",
    "get_transaction_service",
    "get_trading_log_service",
]
