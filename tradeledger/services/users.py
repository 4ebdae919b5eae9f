"""
TradeLedger User Service
Profile reads and updates, soft disable, admin listing and per-user stats.
"""

import logging
import uuid
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.connection import DatabaseTransaction
from ..database.models import (
    Platform,
    PlatformStatus,
    SubAccount,
    TradingLog,
    Transaction,
    User,
)
from ..errors import ConflictError, ConflictKind, ValidationError
from ..ledger.ownership import OwnershipResolver
from ..schemas import Page, UpdateUserRequest, UserResponse, UserStatsResponse
from ..services.query import paginate
from ..utils.helpers import deep_merge, round_decimal, utc_now
from ..utils.validators import clamp_limit, validate_url, validate_username

logger = logging.getLogger(__name__)


class UserService:
    """User profile operations."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession],
                 resolver: Optional[OwnershipResolver] = None):
        self.session_maker = session_maker
        self.resolver = resolver or OwnershipResolver()

    async def get_current_user(self, user_id: uuid.UUID) -> UserResponse:
        async with DatabaseTransaction(self.session_maker) as tx:
            user = await self.resolver.user(tx.session, user_id)
            return UserResponse.model_validate(user)

    async def update_current_user(self, user_id: uuid.UUID, request: UpdateUserRequest) -> UserResponse:
        """
        Update username, avatar, settings or info.

        Settings and info are merged key by key into the stored mappings.
        """
        if request.username is not None:
            is_valid, error = validate_username(request.username)
            if not is_valid:
                raise ValidationError("username", error)
        if request.avatar:
            is_valid, error = validate_url(request.avatar)
            if not is_valid:
                raise ValidationError("avatar", error)

        async with DatabaseTransaction(self.session_maker) as tx:
            session = tx.session
            user = await self.resolver.user(session, user_id)

            if request.username is not None and request.username != user.username:
                taken = (await session.execute(
                    select(User.id).where(User.username == request.username, User.id != user_id)
                )).first()
                if taken:
                    raise ConflictError(ConflictKind.DUPLICATE_USERNAME)
                user.username = request.username

            if request.avatar is not None:
                user.avatar = request.avatar or None
            if request.settings is not None:
                user.settings = deep_merge(user.settings or {}, request.settings)
            if request.info is not None:
                user.info = deep_merge(user.info or {}, request.info)
            user.updated_at = utc_now()

            await session.flush()
            response = UserResponse.model_validate(user)

        logger.info(f"User {user_id} profile updated")
        return response

    async def disable_user(self, user_id: uuid.UUID) -> None:
        """Soft delete; the row stays for referencing records."""
        async with DatabaseTransaction(self.session_maker) as tx:
            user = await self.resolver.user(tx.session, user_id)
            user.deleted_at = utc_now()
        logger.info(f"User {user_id} disabled")

    async def list_users(self, limit: int = 100, offset: int = 0) -> Page[UserResponse]:
        """Admin: active users, newest first."""
        limit = clamp_limit(limit)
        offset = max(offset, 0)
        async with DatabaseTransaction(self.session_maker) as tx:
            query = select(User).where(User.deleted_at.is_(None))
            rows, total = await paginate(tx.session, query, limit, offset, User.created_at.desc(), User.id)
            return Page[UserResponse].build(
                [UserResponse.model_validate(u) for u in rows], total, limit, offset
            )

    async def get_user_by_id(self, user_id: uuid.UUID) -> UserResponse:
        """Admin: any active user."""
        return await self.get_current_user(user_id)

    async def get_user_stats(self, user_id: uuid.UUID) -> UserStatsResponse:
        async with DatabaseTransaction(self.session_maker) as tx:
            session = tx.session
            await self.resolver.user(session, user_id)

            platforms = await self._count(session, select(func.count(Platform.id)).where(
                Platform.user_id == user_id, Platform.deleted_at.is_(None)
            ))
            active_platforms = await self._count(session, select(func.count(Platform.id)).where(
                Platform.user_id == user_id,
                Platform.deleted_at.is_(None),
                Platform.status == PlatformStatus.ACTIVE.value,
            ))
            sub_accounts = await self._count(session, select(func.count(SubAccount.id)).where(
                SubAccount.user_id == user_id, SubAccount.deleted_at.is_(None)
            ))
            transactions = await self._count(session, select(func.count(Transaction.id)).where(
                Transaction.user_id == user_id
            ))
            trading_logs = await self._count(session, select(func.count(TradingLog.id)).where(
                TradingLog.user_id == user_id
            ))

            balances: Dict[str, Decimal] = {}
            result = await session.execute(
                select(SubAccount.symbol, SubAccount.balance).where(
                    SubAccount.user_id == user_id, SubAccount.deleted_at.is_(None)
                )
            )
            for symbol, balance in result.all():
                balances[symbol] = balances.get(symbol, Decimal("0")) + round_decimal(balance)

        return UserStatsResponse(
            total_platforms=platforms,
            active_platforms=active_platforms,
            total_sub_accounts=sub_accounts,
            total_transactions=transactions,
            total_trading_logs=trading_logs,
            balances=balances,
        )

    @staticmethod
    async def _count(session: AsyncSession, query) -> int:
        return int((await session.execute(query)).scalar_one())


__all__ = ["UserService"]
