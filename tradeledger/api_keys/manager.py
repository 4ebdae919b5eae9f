"""
TradeLedger API Key Manager
===========================
Issuance, validation, rotation and revocation of per-user API keys.

Keys look like ``usr_<64 hex chars>`` (256 random bits). Only the keyed hash
(for lookup) and the ciphertext are stored; the plaintext is handed back once,
on the instance returned by ``create_key``/``rotate_key``.
"""

import logging
import re
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config.settings import SecuritySettings, settings
from ..database.connection import DatabaseTransaction, retry_transient
from ..database.models import User, UserAPIKey
from ..errors import AuthError, NotFoundError, ValidationError
from ..schemas import APIKeyCreatedResponse, APIKeyResponse
from ..security.crypto import CryptoEnvelope, get_crypto_envelope
from ..utils.helpers import to_utc, utc_now
from ..utils.validators import validate_api_permissions

logger = logging.getLogger(__name__)

ROTATED_SUFFIX = " (Rotated)"
NAME_MAX_LENGTH = 100


# ============================================================================
# Validation Result
# ============================================================================

@dataclass
class APIKeyValidationResult:
    """Outcome of validating a presented key. Unknown keys are not errors."""
    valid: bool
    user_id: Optional[uuid.UUID] = None
    api_key_id: Optional[uuid.UUID] = None
    permissions: List[str] = field(default_factory=list)
    last_used_at: Optional[datetime] = None
    error: Optional[str] = None

    def has_permission(self, permission: str) -> bool:
        return self.valid and (permission in self.permissions or "*" in self.permissions)


# ============================================================================
# Manager
# ============================================================================

class APIKeyManager:
    """
    API key lifecycle backed by the ``user_api_keys`` table.

    Every mutating call runs in its own DatabaseTransaction; rotation issues
    the replacement and deactivates the original in one scope.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        envelope: Optional[CryptoEnvelope] = None,
        security: Optional[SecuritySettings] = None
    ):
        self.session_maker = session_maker
        self.envelope = envelope or get_crypto_envelope()
        self.security = security or settings.security
        self._format = re.compile(
            rf"^{re.escape(self.security.api_key_prefix)}[0-9a-f]{{{self.security.api_key_bytes * 2}}}$"
        )

    # ========================================================================
    # Key material
    # ========================================================================

    def generate_key(self) -> str:
        """Generate a new plaintext key."""
        return f"{self.security.api_key_prefix}{secrets.token_hex(self.security.api_key_bytes)}"

    def check_format(self, raw_key: str) -> None:
        """
        Reject anything that is not a key this manager could have issued.

        Raises:
            AuthError: Prefix or body does not match.
        """
        if not raw_key or not self._format.match(raw_key):
            raise AuthError("invalid API key format")

    @staticmethod
    def _check_permissions(permissions: List[str]) -> List[str]:
        all_valid, valid, invalid = validate_api_permissions(permissions)
        if not all_valid:
            raise ValidationError("permissions", f"unknown permissions: {', '.join(invalid)}")
        if not valid:
            raise ValidationError("permissions", "at least one permission is required")
        # de-duplicate, keep order
        return list(dict.fromkeys(valid))

    async def _issue(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        name: str,
        permissions: List[str],
        expires_at: Optional[datetime]
    ) -> UserAPIKey:
        raw_key = self.generate_key()
        api_key = UserAPIKey(
            id=uuid.uuid4(),
            user_id=user_id,
            name=name,
            encrypted_key=self.envelope.encrypt(raw_key),
            key_hash=self.envelope.hash(raw_key),
            permissions=permissions,
            is_active=True,
            expires_at=to_utc(expires_at),
        )
        session.add(api_key)
        await session.flush()
        api_key.plaintext_key = raw_key
        return api_key

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def create_key(
        self,
        user_id: uuid.UUID,
        name: str,
        permissions: Optional[List[str]] = None,
        expires_at: Optional[datetime] = None
    ) -> UserAPIKey:
        """
        Issue a new API key for an active user.

        Args:
            user_id: Owner
            name: Display name
            permissions: Capability strings; defaults to ["read"]
            expires_at: Optional expiry

        Returns:
            The stored key with ``plaintext_key`` populated (the only time it is)
        """
        if not name or len(name) > NAME_MAX_LENGTH:
            raise ValidationError("name", f"must be between 1 and {NAME_MAX_LENGTH} characters")
        perms = self._check_permissions(permissions if permissions is not None else ["read"])
        if expires_at is not None and to_utc(expires_at) <= utc_now():
            raise ValidationError("expires_at", "must be in the future")

        async with DatabaseTransaction(self.session_maker) as tx:
            user = await tx.session.get(User, user_id)
            if user is None or not user.is_active:
                raise NotFoundError("user")
            api_key = await self._issue(tx.session, user_id, name, perms, expires_at)

        logger.info(f"API key {api_key.id} issued for user {user_id} with permissions {perms}")
        return api_key

    async def validate_key(self, raw_key: str) -> APIKeyValidationResult:
        """
        Validate a presented key and record its use.

        Raises:
            AuthError: Malformed key.

        Returns:
            APIKeyValidationResult; ``valid=False`` with an error message for
            unknown, inactive or expired keys.
        """
        self.check_format(raw_key)
        key_hash = self.envelope.hash(raw_key)

        async def attempt() -> APIKeyValidationResult:
            async with DatabaseTransaction(self.session_maker) as tx:
                session = tx.session
                result = await session.execute(
                    select(UserAPIKey)
                    .where(UserAPIKey.key_hash == key_hash)
                    .order_by(UserAPIKey.is_active.desc(), UserAPIKey.created_at.desc())
                    .limit(1)
                )
                api_key = result.scalar_one_or_none()
                if api_key is None:
                    return APIKeyValidationResult(valid=False, error="API key not found")
                if not api_key.is_active:
                    return APIKeyValidationResult(valid=False, error="API key not found or inactive")

                owner = await session.get(User, api_key.user_id)
                if owner is None or not owner.is_active:
                    return APIKeyValidationResult(valid=False, error="API key not found or inactive")

                now = utc_now()
                if api_key.is_expired(now):
                    return APIKeyValidationResult(valid=False, error="API key has expired")

                api_key.last_used_at = now
                return APIKeyValidationResult(
                    valid=True,
                    user_id=api_key.user_id,
                    api_key_id=api_key.id,
                    permissions=list(api_key.permissions or []),
                    last_used_at=now,
                )

        outcome = await retry_transient(attempt)
        if not outcome.valid:
            logger.debug(f"API key rejected: {outcome.error}")
        return outcome

    async def rotate_key(self, user_id: uuid.UUID, key_id: uuid.UUID) -> UserAPIKey:
        """
        Replace a key: same permissions and expiry, name suffixed " (Rotated)".

        The original is deactivated in the same transaction.

        Raises:
            NotFoundError: Key missing, inactive, or owned by someone else.
        """
        async with DatabaseTransaction(self.session_maker) as tx:
            session = tx.session
            original = await self._owned_key(session, user_id, key_id, lock=True)
            if not original.is_active:
                raise NotFoundError("API key")

            name = original.name[:NAME_MAX_LENGTH - len(ROTATED_SUFFIX)] + ROTATED_SUFFIX
            original.is_active = False
            original.updated_at = utc_now()
            # Deactivate first so the partial unique index never sees two active rows
            await session.flush()

            replacement = await self._issue(
                session, user_id, name, list(original.permissions or []), original.expires_at
            )

        logger.info(f"API key {key_id} rotated to {replacement.id} for user {user_id}")
        return replacement

    async def revoke_key(self, user_id: uuid.UUID, key_id: uuid.UUID) -> None:
        """Deactivate a key. Revoking an already revoked key is a no-op."""
        async with DatabaseTransaction(self.session_maker) as tx:
            api_key = await self._owned_key(tx.session, user_id, key_id, lock=True)
            if api_key.is_active:
                api_key.is_active = False
                api_key.updated_at = utc_now()

        logger.info(f"API key {key_id} revoked for user {user_id}")

    async def list_keys(self, user_id: uuid.UUID, include_revoked: bool = False) -> List[UserAPIKey]:
        """User's keys, newest first. Plaintext is never present on these."""
        async with DatabaseTransaction(self.session_maker) as tx:
            query = select(UserAPIKey).where(UserAPIKey.user_id == user_id)
            if not include_revoked:
                query = query.where(UserAPIKey.is_active.is_(True))
            result = await tx.session.execute(
                query.order_by(UserAPIKey.created_at.desc(), UserAPIKey.id)
            )
            return list(result.scalars().all())

    @staticmethod
    async def _owned_key(
        session: AsyncSession,
        user_id: uuid.UUID,
        key_id: uuid.UUID,
        lock: bool = False
    ) -> UserAPIKey:
        query = select(UserAPIKey).where(UserAPIKey.id == key_id, UserAPIKey.user_id == user_id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        api_key = (await session.execute(query)).scalar_one_or_none()
        if api_key is None:
            raise NotFoundError("API key")
        return api_key

    # ========================================================================
    # Views
    # ========================================================================

    def to_response(self, api_key: UserAPIKey) -> APIKeyResponse:
        return APIKeyResponse(
            id=api_key.id,
            user_id=api_key.user_id,
            name=api_key.name,
            masked_key=api_key.masked_key(self.security.mask_visible_chars),
            permissions=list(api_key.permissions or []),
            is_active=api_key.is_active,
            last_used_at=api_key.last_used_at,
            expires_at=api_key.expires_at,
            created_at=api_key.created_at,
        )

    def to_created_response(self, api_key: UserAPIKey) -> APIKeyCreatedResponse:
        return APIKeyCreatedResponse(
            **self.to_response(api_key).model_dump(),
            key=api_key.plaintext_key,
        )


__all__ = ["APIKeyManager", "APIKeyValidationResult"]
