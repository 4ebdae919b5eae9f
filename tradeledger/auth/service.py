"""
TradeLedger Authentication Service
Login initiation, OAuth callback handling with identity linkage, token refresh.
"""

import hmac
import logging
import re
import secrets
import uuid
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.connection import DatabaseTransaction
from ..database.models import OAuthIdentity, OAuthProvider, User, UserRole
from ..errors import AuthError, ConflictError, ConflictKind, NotFoundError
from ..schemas import AuthResponse, CallbackRequest, LoginRequest, LoginResponse, RefreshRequest, UserResponse
from ..security.crypto import CryptoEnvelope, get_crypto_envelope
from ..utils.helpers import utc_now
from ..utils.validators import validate_email_address
from .jwt_handler import JWTHandler
from .oauth import OAuthManager, OAuthTokens, OAuthUserInfo, generate_state

logger = logging.getLogger(__name__)

USERNAME_BASE_LENGTH = 20
USERNAME_MAX_LENGTH = 50
USERNAME_MIN_LENGTH = 3

# Concurrent first logins for the same person race on the unique indexes
LINK_ATTEMPTS = 3
LINK_CONFLICTS = (
    ConflictKind.DUPLICATE_IDENTITY,
    ConflictKind.DUPLICATE_EMAIL,
    ConflictKind.DUPLICATE_USERNAME,
)

_NAME_CHARS = re.compile(r"[^a-zA-Z0-9]")
_EMAIL_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


def username_base(name: Optional[str], email: Optional[str]) -> str:
    """
    Derive a username stem from the provider profile.

    Alphanumerics of the display name, else the email local part, else a
    random ``user<digits>`` stem. At most 20 characters.
    """
    if name:
        cleaned = _NAME_CHARS.sub("", name)
        if len(cleaned) >= USERNAME_MIN_LENGTH:
            return cleaned[:USERNAME_BASE_LENGTH]

    if email and "@" in email:
        local = _EMAIL_CHARS.sub("", email.split("@", 1)[0])
        if len(local) >= USERNAME_MIN_LENGTH:
            return local[:USERNAME_BASE_LENGTH]

    return f"user{secrets.randbelow(10 ** 9):09d}"


class AuthService:
    """OAuth login flows on top of the provider drivers and the JWT handler."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        oauth: Optional[OAuthManager] = None,
        jwt_handler: Optional[JWTHandler] = None,
        envelope: Optional[CryptoEnvelope] = None,
    ):
        self.session_maker = session_maker
        self.oauth = oauth or OAuthManager()
        self.jwt = jwt_handler or JWTHandler()
        self.envelope = envelope or get_crypto_envelope()

    # ========================================================================
    # Flows
    # ========================================================================

    def initiate_login(self, request: LoginRequest) -> LoginResponse:
        state = generate_state()
        auth_url = self.oauth.auth_url(request.provider, state)
        logger.info(f"OAuth login initiated with {request.provider}")
        return LoginResponse(auth_url=auth_url, state=state)

    async def handle_callback(self, request: CallbackRequest, expected_state: Optional[str]) -> AuthResponse:
        """
        Complete a login: check state, exchange the code, link the identity.

        Raises:
            AuthError: State mismatch or provider rejection.
            ValidationError: Unknown provider.
        """
        if not expected_state:
            raise AuthError("expected state is empty")
        if not hmac.compare_digest(expected_state, request.state):
            raise AuthError("state parameter mismatch")

        self.oauth.driver(request.provider)
        tokens = await self.oauth.exchange(request.provider, request.code)
        profile = await self.oauth.user_info(request.provider, tokens)

        user = await self.find_or_create_user(profile, tokens)
        pair = self.jwt.create_token_pair(user.id, user.username, user.email, user.role)

        logger.info(f"User {user.id} logged in via {profile.provider}")
        return AuthResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            user=UserResponse.model_validate(user),
        )

    async def refresh(self, request: RefreshRequest) -> AuthResponse:
        """New access token; the refresh token is returned unchanged."""
        user_id = self.jwt.verify_refresh_token(request.refresh_token)

        async with DatabaseTransaction(self.session_maker) as tx:
            user = await tx.session.get(User, user_id)
            if user is None or not user.is_active:
                raise AuthError("user not found or disabled")

        return AuthResponse(
            access_token=self.jwt.create_access_token(user.id, user.username, user.email, user.role),
            refresh_token=request.refresh_token,
            token_type="Bearer",
            expires_in=self.jwt.access_token_expires_in,
            user=UserResponse.model_validate(user),
        )

    # ========================================================================
    # Identity linkage
    # ========================================================================

    async def find_or_create_user(self, profile: OAuthUserInfo, tokens: OAuthTokens) -> User:
        """
        Resolve the User for a provider profile.

        Order: existing identity, then an existing user with the same email,
        then a new user with a generated unique username.
        """
        if not profile.email:
            raise AuthError(f"{profile.provider} provider returned no email")
        # WeChat emails are synthesized from the openid
        if profile.provider != OAuthProvider.WECHAT.value:
            is_valid, error = validate_email_address(profile.email)
            if not is_valid:
                raise AuthError(f"{profile.provider} provider returned an invalid email: {error}")

        attempt = 0
        while True:
            attempt += 1
            try:
                async with DatabaseTransaction(self.session_maker) as tx:
                    return await self._link(tx.session, profile, tokens)
            except ConflictError as e:
                if e.conflict_kind not in LINK_CONFLICTS or attempt >= LINK_ATTEMPTS:
                    raise
                logger.info(f"Identity linkage raced ({e.conflict_kind.value}), retrying")

    async def _link(self, session: AsyncSession, profile: OAuthUserInfo, tokens: OAuthTokens) -> User:
        now = utc_now()
        provider_data = {"name": profile.name, "avatar": profile.avatar_url}

        identity = (await session.execute(
            select(OAuthIdentity)
            .where(
                OAuthIdentity.provider == profile.provider,
                OAuthIdentity.provider_user_id == profile.provider_user_id,
            )
            .with_for_update()
        )).scalar_one_or_none()

        if identity is not None:
            user = await session.get(User, identity.user_id)
            if user is None or not user.is_active:
                raise AuthError("user account is disabled")

            self._store_tokens(identity, tokens)
            identity.info = {**(identity.info or {}), "last_login": now.isoformat(), "provider_data": provider_data}
            identity.updated_at = now
            if profile.avatar_url and user.avatar != profile.avatar_url:
                user.avatar = profile.avatar_url
                user.updated_at = now
            await session.flush()
            return user

        user = (await session.execute(
            select(User).where(func.lower(User.email) == profile.email.lower())
        )).scalar_one_or_none()

        if user is not None:
            if not user.is_active:
                raise AuthError("user account is disabled")
            logger.info(f"Linking {profile.provider} identity to existing user {user.id} by email")
        else:
            user = User(
                id=uuid.uuid4(),
                username=await self._unique_username(session, username_base(profile.name, profile.email)),
                email=profile.email,
                avatar=profile.avatar_url or None,
                role=UserRole.USER.value,
                settings={},
                info={
                    "oauth_provider": profile.provider,
                    "created_via": "oauth",
                    "first_login": now.isoformat(),
                },
            )
            session.add(user)
            await session.flush()
            logger.info(f"User {user.id} created from {profile.provider} login")

        identity = OAuthIdentity(
            id=uuid.uuid4(),
            user_id=user.id,
            provider=profile.provider,
            provider_user_id=profile.provider_user_id,
            info={"provider_data": provider_data, "first_auth": now.isoformat()},
        )
        self._store_tokens(identity, tokens)
        session.add(identity)
        await session.flush()
        return user

    def _store_tokens(self, identity: OAuthIdentity, tokens: OAuthTokens) -> None:
        identity.encrypted_access_token = self.envelope.encrypt(tokens.access_token)
        if tokens.refresh_token:
            identity.encrypted_refresh_token = self.envelope.encrypt(tokens.refresh_token)
        expires_at = tokens.expires_at()
        if expires_at is not None:
            identity.expires_at = expires_at

    @staticmethod
    async def _unique_username(session: AsyncSession, base: str) -> str:
        """``base``, or ``base`` plus the first free numeric suffix."""
        candidate = base
        suffix = 0
        while (await session.execute(select(User.id).where(User.username == candidate))).first():
            suffix += 1
            candidate = f"{base[:USERNAME_MAX_LENGTH - len(str(suffix))]}{suffix}"
        return candidate

    async def get_identity(self, user_id: uuid.UUID, provider: str) -> OAuthIdentity:
        """A user's identity for one provider."""
        async with DatabaseTransaction(self.session_maker) as tx:
            identity = (await tx.session.execute(
                select(OAuthIdentity).where(
                    OAuthIdentity.user_id == user_id, OAuthIdentity.provider == provider
                )
            )).scalar_one_or_none()
            if identity is None:
                raise NotFoundError("oauth identity")
            return identity


__all__ = ["AuthService", "username_base"]
