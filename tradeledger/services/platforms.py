"""
TradeLedger Platform Service
Trading platforms and their encrypted API credentials.
"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.connection import DatabaseTransaction
from ..database.models import (
    Platform,
    PlatformStatus,
    PlatformType,
    SecurePlatform,
    SubAccount,
)
from ..errors import CryptoError, IntegrityViolationError, ValidationError
from ..ledger.ownership import OwnershipResolver
from ..schemas import (
    CreatePlatformRequest,
    PlatformCredentials,
    PlatformResponse,
    UpdatePlatformRequest,
)
from ..security.crypto import CryptoEnvelope, get_crypto_envelope
from ..utils.helpers import deep_merge, utc_now

logger = logging.getLogger(__name__)

MAX_PLATFORMS_PER_USER = 10

PLATFORM_TYPES = tuple(t.value for t in PlatformType)
PLATFORM_STATUSES = tuple(s.value for s in PlatformStatus)


class PlatformService:
    """CRUD for trading platforms; credentials never leave unencrypted except via get_credentials."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession],
                 envelope: Optional[CryptoEnvelope] = None,
                 resolver: Optional[OwnershipResolver] = None):
        self.session_maker = session_maker
        self.envelope = envelope or get_crypto_envelope()
        self.resolver = resolver or OwnershipResolver()

    # ========================================================================
    # Commands
    # ========================================================================

    async def create_platform(self, user_id: uuid.UUID, request: CreatePlatformRequest) -> PlatformResponse:
        """
        Register a trading platform.

        Raises:
            ValidationError: Unknown type or platform limit reached.
            ConflictError: Name, API key or API secret already used by an
                active platform of this user.
        """
        self._check_type(request.type)

        async with DatabaseTransaction(self.session_maker) as tx:
            session = tx.session
            await self.resolver.user(session, user_id)

            count = (await session.execute(
                select(func.count(Platform.id)).where(
                    Platform.user_id == user_id, Platform.deleted_at.is_(None)
                )
            )).scalar_one()
            if count >= MAX_PLATFORMS_PER_USER:
                raise ValidationError(
                    "platforms",
                    f"maximum number of trading platforms reached ({MAX_PLATFORMS_PER_USER})",
                    "limit",
                )

            info = dict(request.info or {})
            info.update({"created_by": "api", "api_version": "v1"})

            platform = Platform(
                id=uuid.uuid4(),
                user_id=user_id,
                name=request.name,
                type=request.type,
                status=PlatformStatus.ACTIVE.value,
                encrypted_api_key=self.envelope.encrypt(request.api_key),
                encrypted_api_secret=self.envelope.encrypt(request.api_secret),
                api_key_hash=self.envelope.hash(request.api_key),
                api_secret_hash=self.envelope.hash(request.api_secret),
                info=info,
            )
            session.add(platform)
            await session.flush()

            session.add(SecurePlatform(
                platform_id=platform.id,
                user_id=user_id,
                masked_api_key=self.envelope.mask(request.api_key),
                security_settings={},
            ))
            await session.flush()
            response = self._to_response(platform)

        logger.info(f"Trading platform {platform.id} ({platform.type}) created for user {user_id}")
        return response

    async def update_platform(self, user_id: uuid.UUID, platform_id: uuid.UUID,
                              request: UpdatePlatformRequest) -> PlatformResponse:
        if request.type is not None:
            self._check_type(request.type)
        if request.status is not None and request.status not in PLATFORM_STATUSES:
            raise ValidationError("status", f"must be one of {', '.join(PLATFORM_STATUSES)}")

        async with DatabaseTransaction(self.session_maker) as tx:
            session = tx.session
            platform = await self.resolver.platform(session, user_id, platform_id, lock=True)

            if request.name is not None:
                platform.name = request.name
            if request.type is not None:
                platform.type = request.type
            if request.status is not None:
                platform.status = request.status
            if request.api_key is not None:
                platform.encrypted_api_key = self.envelope.encrypt(request.api_key)
                platform.api_key_hash = self.envelope.hash(request.api_key)
                record = await self._secure_record(session, platform.id)
                if record is not None:
                    record.masked_api_key = self.envelope.mask(request.api_key)
            if request.api_secret is not None:
                platform.encrypted_api_secret = self.envelope.encrypt(request.api_secret)
                platform.api_secret_hash = self.envelope.hash(request.api_secret)
            if request.info is not None:
                platform.info = deep_merge(platform.info or {}, request.info)
            platform.updated_at = utc_now()

            await session.flush()
            response = self._to_response(platform)

        logger.info(f"Trading platform {platform_id} updated")
        return response

    async def delete_platform(self, user_id: uuid.UUID, platform_id: uuid.UUID) -> None:
        """Soft delete; refused while active sub-accounts remain."""
        async with DatabaseTransaction(self.session_maker) as tx:
            session = tx.session
            platform = await self.resolver.platform(session, user_id, platform_id, lock=True)

            remaining = (await session.execute(
                select(func.count(SubAccount.id)).where(
                    SubAccount.platform_id == platform.id, SubAccount.deleted_at.is_(None)
                )
            )).scalar_one()
            if remaining:
                raise IntegrityViolationError(
                    "cannot delete trading platform with existing sub-accounts",
                    relation="sub_accounts",
                )

            platform.deleted_at = utc_now()

        logger.info(f"Trading platform {platform_id} deleted")

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_platform(self, user_id: uuid.UUID, platform_id: uuid.UUID) -> PlatformResponse:
        async with DatabaseTransaction(self.session_maker) as tx:
            platform = await self.resolver.platform(tx.session, user_id, platform_id)
            return self._to_response(platform)

    async def list_platforms(self, user_id: uuid.UUID) -> List[PlatformResponse]:
        async with DatabaseTransaction(self.session_maker) as tx:
            result = await tx.session.execute(
                select(Platform)
                .where(Platform.user_id == user_id, Platform.deleted_at.is_(None))
                .order_by(Platform.created_at.desc(), Platform.id)
            )
            return [self._to_response(p) for p in result.scalars().all()]

    async def get_credentials(self, user_id: uuid.UUID, platform_id: uuid.UUID) -> PlatformCredentials:
        """
        Decrypt the platform's credentials for its owner.

        Each successful call is recorded on the platform's secure record;
        decryption failures bump its failure counter.
        """
        try:
            async with DatabaseTransaction(self.session_maker) as tx:
                session = tx.session
                platform = await self.resolver.platform(session, user_id, platform_id)
                credentials = PlatformCredentials(
                    platform_id=platform.id,
                    api_key=self.envelope.decrypt(platform.encrypted_api_key),
                    api_secret=self.envelope.decrypt(platform.encrypted_api_secret),
                )
                record = await self._secure_record(session, platform.id)
                if record is not None:
                    record.last_used_at = utc_now()
                    record.use_count = (record.use_count or 0) + 1
        except CryptoError:
            logger.error(f"Credential decryption failed for trading platform {platform_id}")
            await self._record_failure(platform_id)
            raise

        logger.info(f"Credentials of trading platform {platform_id} accessed by owner")
        return credentials

    # ========================================================================
    # Helpers
    # ========================================================================

    @staticmethod
    def _check_type(platform_type: str) -> None:
        if platform_type not in PLATFORM_TYPES:
            raise ValidationError("type", f"must be one of {', '.join(PLATFORM_TYPES)}")

    @staticmethod
    async def _secure_record(session: AsyncSession, platform_id: uuid.UUID) -> Optional[SecurePlatform]:
        result = await session.execute(
            select(SecurePlatform).where(SecurePlatform.platform_id == platform_id)
        )
        return result.scalar_one_or_none()

    async def _record_failure(self, platform_id: uuid.UUID) -> None:
        async with DatabaseTransaction(self.session_maker) as tx:
            record = await self._secure_record(tx.session, platform_id)
            if record is not None:
                record.failure_count = (record.failure_count or 0) + 1
                record.last_failure_at = utc_now()

    def _to_response(self, platform: Platform) -> PlatformResponse:
        return PlatformResponse(
            id=platform.id,
            user_id=platform.user_id,
            name=platform.name,
            type=platform.type,
            status=platform.status,
            api_key=self.envelope.mask(self.envelope.decrypt(platform.encrypted_api_key)),
            api_secret=self.envelope.mask(self.envelope.decrypt(platform.encrypted_api_secret)),
            info=platform.info or {},
            created_at=platform.created_at,
            updated_at=platform.updated_at,
        )


__all__ = ["PlatformService", "MAX_PLATFORMS_PER_USER"]
