"""
TradeLedger JWT Authentication Handler
======================================
Access and refresh token generation and verification.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from ..config.settings import JWTSettings, settings
from ..errors import AuthError
from ..utils.helpers import utc_now

logger = logging.getLogger(__name__)

# Token types
TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"

TOKEN_ISSUER = "tradeledger"


@dataclass
class TokenPair:
    """Access and refresh token pair"""
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class JWTHandler:
    """
    Issues and verifies HS256 tokens.

    Access tokens carry username, email and role; refresh tokens only the
    subject. Both carry a ``type`` claim so one cannot stand in for the other.
    """

    def __init__(self, config: Optional[JWTSettings] = None):
        self.config = config or settings.jwt

    @property
    def access_token_expires_in(self) -> int:
        return self.config.access_token_expire_seconds

    def _encode(self, claims: Dict[str, Any], expires_delta: timedelta) -> str:
        now = utc_now()
        payload = {
            **claims,
            "iss": TOKEN_ISSUER,
            "iat": now,
            "exp": now + expires_delta,
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(payload, self.config.secret_key, algorithm=self.config.algorithm)

    def create_access_token(self, user_id: uuid.UUID, username: str, email: str, role: str) -> str:
        return self._encode(
            {
                "sub": str(user_id),
                "username": username,
                "email": email,
                "role": role,
                "type": TOKEN_TYPE_ACCESS,
            },
            timedelta(seconds=self.config.access_token_expire_seconds),
        )

    def create_refresh_token(self, user_id: uuid.UUID) -> str:
        return self._encode(
            {"sub": str(user_id), "type": TOKEN_TYPE_REFRESH},
            timedelta(days=self.config.refresh_token_expire_days),
        )

    def create_token_pair(self, user_id: uuid.UUID, username: str, email: str, role: str) -> TokenPair:
        return TokenPair(
            access_token=self.create_access_token(user_id, username, email, role),
            refresh_token=self.create_refresh_token(user_id),
            expires_in=self.access_token_expires_in,
        )

    def decode_token(self, token: str, expected_type: str) -> Dict[str, Any]:
        """
        Verify signature, expiry, issuer and token type.

        Raises:
            AuthError: Any verification failure.
        """
        try:
            payload = jwt.decode(
                token,
                self.config.secret_key,
                algorithms=[self.config.algorithm],
                issuer=TOKEN_ISSUER,
            )
        except ExpiredSignatureError as e:
            raise AuthError("token has expired") from e
        except JWTError as e:
            logger.warning(f"Token decode error: {e}")
            raise AuthError("invalid token") from e

        if payload.get("type") != expected_type:
            raise AuthError("invalid token type")
        return payload

    def user_id_from(self, payload: Dict[str, Any]) -> uuid.UUID:
        try:
            return uuid.UUID(payload.get("sub") or "")
        except ValueError as e:
            raise AuthError("invalid token subject") from e

    def verify_access_token(self, token: str) -> Dict[str, Any]:
        return self.decode_token(token, TOKEN_TYPE_ACCESS)

    def verify_refresh_token(self, token: str) -> uuid.UUID:
        """Return the subject of a valid refresh token."""
        return self.user_id_from(self.decode_token(token, TOKEN_TYPE_REFRESH))


__all__ = [
    "JWTHandler",
    "TokenPair",
    "TOKEN_TYPE_ACCESS",
    "TOKEN_TYPE_REFRESH",
]
