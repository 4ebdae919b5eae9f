"""
TradeLedger Authentication Dependencies
Resolve the caller from a Bearer JWT or an X-API-Key header.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..api_keys.manager import APIKeyManager
from ..auth.jwt_handler import JWTHandler
from ..database.connection import DatabaseTransaction, get_session_maker
from ..database.models import User, UserRole
from ..errors import AuthError
from .services import get_api_key_manager, get_jwt_handler

logger = logging.getLogger(__name__)

# HTTP Bearer scheme for API documentation
http_bearer = HTTPBearer(auto_error=False)
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass
class Caller:
    """The authenticated principal of a request."""
    user_id: uuid.UUID
    role: str
    via: str
    api_key_id: Optional[uuid.UUID] = None
    permissions: List[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    def has_permission(self, permission: str) -> bool:
        # JWT sessions act with the user's full rights
        if self.via == "jwt":
            return True
        return permission in self.permissions or "*" in self.permissions


def _unauthorized(detail: str, scheme: str = "Bearer") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": scheme},
    )


# ============================================================================
# Caller Resolution
# ============================================================================

async def get_current_caller(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    api_key: Optional[str] = Depends(api_key_header),
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    jwt_handler: JWTHandler = Depends(get_jwt_handler),
    key_manager: APIKeyManager = Depends(get_api_key_manager),
) -> Caller:
    """
    Authenticate the request.

    A Bearer token wins when both are present. The user behind a token must
    still be active.

    Raises:
        HTTPException: 401 when no valid credentials are presented.
    """
    if credentials is not None:
        try:
            payload = jwt_handler.verify_access_token(credentials.credentials)
            user_id = jwt_handler.user_id_from(payload)
        except AuthError as e:
            raise _unauthorized(e.message) from e

        async with DatabaseTransaction(session_maker) as tx:
            user = await tx.session.get(User, user_id)
            if user is None or not user.is_active:
                raise _unauthorized("user not found or disabled")
            caller = Caller(user_id=user.id, role=user.role, via="jwt")

    elif api_key:
        try:
            result = await key_manager.validate_key(api_key)
        except AuthError as e:
            raise _unauthorized(e.message, "ApiKey") from e
        if not result.valid:
            raise _unauthorized(result.error or "invalid API key", "ApiKey")

        async with DatabaseTransaction(session_maker) as tx:
            user = await tx.session.get(User, result.user_id)
            if user is None or not user.is_active:
                raise _unauthorized("API key not found or inactive", "ApiKey")
            caller = Caller(
                user_id=user.id,
                role=user.role,
                via="api_key",
                api_key_id=result.api_key_id,
                permissions=result.permissions,
            )

    else:
        raise _unauthorized("Could not validate credentials")

    request.state.user_id = str(caller.user_id)
    return caller


def require_permission(permission: str):
    """
    Create a dependency that requires an API-key permission.

    Args:
        permission: The required permission.

    Returns:
        Callable: Dependency function.
    """
    async def permission_checker(caller: Caller = Depends(get_current_caller)) -> Caller:
        if not caller.has_permission(permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"API key missing required permission: {permission}",
            )
        return caller

    return permission_checker


async def require_admin(caller: Caller = Depends(get_current_caller)) -> Caller:
    if not caller.is_admin or not caller.has_permission("admin"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions. Required role: admin",
        )
    return caller


async def require_session(caller: Caller = Depends(get_current_caller)) -> Caller:
    """Interactive (JWT) callers only; API keys cannot manage API keys."""
    if caller.via != "jwt":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This operation requires a user session",
        )
    return caller


# ============================================================================
# Exports
# ============================================================================

__all__ = [
    "Caller",
    "get_current_caller",
    "require_permission",
    "require_admin",
    "require_session",
    "http_bearer",
    "api_key_header",
]
