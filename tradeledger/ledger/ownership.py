"""
TradeLedger Ownership Resolver
Resolves user -> platform -> sub-account -> transaction -> trading log chains.

Every lookup filters on the caller's user id in SQL, so an entity that is
missing and one owned by another user produce the same NotFoundError.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import Platform, SubAccount, TradingLog, Transaction, User
from ..errors import NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class OwnershipScope:
    """
    Capability object resolved once per request.

    Holds the caller's user id plus whatever platform and sub-accounts were
    confirmed to belong to that user.
    """
    user_id: uuid.UUID
    platform: Optional[Platform] = None
    sub_accounts: Dict[uuid.UUID, SubAccount] = field(default_factory=dict)

    def sub_account(self, sub_account_id: uuid.UUID) -> SubAccount:
        account = self.sub_accounts.get(sub_account_id)
        if account is None:
            raise NotFoundError("sub-account")
        return account

    def owns(self, sub_account_id: uuid.UUID) -> bool:
        return sub_account_id in self.sub_accounts


class OwnershipResolver:
    """Ownership-checked fetches; all operate on a caller-supplied session."""

    async def user(self, session: AsyncSession, user_id: uuid.UUID) -> User:
        result = await session.execute(
            select(User).where(User.id == user_id, User.deleted_at.is_(None))
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFoundError("user")
        return user

    async def platform(self, session: AsyncSession, user_id: uuid.UUID,
                       platform_id: uuid.UUID, lock: bool = False) -> Platform:
        query = select(Platform).where(
            Platform.id == platform_id,
            Platform.user_id == user_id,
            Platform.deleted_at.is_(None),
        )
        if lock:
            query = query.with_for_update()
        platform = (await session.execute(query)).scalar_one_or_none()
        if platform is None:
            raise NotFoundError("trading platform")
        return platform

    async def sub_account(self, session: AsyncSession, user_id: uuid.UUID,
                          sub_account_id: uuid.UUID, lock: bool = False,
                          platform_id: Optional[uuid.UUID] = None) -> SubAccount:
        accounts = await self.sub_accounts(
            session, user_id, [sub_account_id], lock=lock, platform_id=platform_id
        )
        return accounts[sub_account_id]

    async def sub_accounts(self, session: AsyncSession, user_id: uuid.UUID,
                           sub_account_ids: Iterable[uuid.UUID], lock: bool = False,
                           platform_id: Optional[uuid.UUID] = None) -> Dict[uuid.UUID, SubAccount]:
        """
        Fetch several sub-accounts owned by ``user_id``.

        With ``lock`` the rows are selected FOR UPDATE one at a time in sorted
        id order, so two requests touching the same pair cannot deadlock.
        """
        found: Dict[uuid.UUID, SubAccount] = {}
        for sub_account_id in sorted(set(sub_account_ids), key=str):
            query = select(SubAccount).where(
                SubAccount.id == sub_account_id,
                SubAccount.user_id == user_id,
                SubAccount.deleted_at.is_(None),
            )
            if platform_id is not None:
                query = query.where(SubAccount.platform_id == platform_id)
            if lock:
                query = query.with_for_update().execution_options(populate_existing=True)
            account = (await session.execute(query)).scalar_one_or_none()
            if account is None:
                logger.info(f"Sub-account {sub_account_id} not resolvable for user {user_id}")
                raise NotFoundError("sub-account")
            found[sub_account_id] = account
        return found

    async def transaction(self, session: AsyncSession, user_id: uuid.UUID,
                          transaction_id: uuid.UUID) -> Transaction:
        result = await session.execute(
            select(Transaction).where(
                Transaction.id == transaction_id,
                Transaction.user_id == user_id,
            )
        )
        transaction = result.scalar_one_or_none()
        if transaction is None:
            raise NotFoundError("transaction")
        return transaction

    async def trading_log(self, session: AsyncSession, user_id: uuid.UUID,
                          trading_log_id: uuid.UUID, lock: bool = False) -> TradingLog:
        query = select(TradingLog).where(
            TradingLog.id == trading_log_id,
            TradingLog.user_id == user_id,
        )
        if lock:
            query = query.with_for_update()
        trading_log = (await session.execute(query)).scalar_one_or_none()
        if trading_log is None:
            raise NotFoundError("trading log")
        return trading_log

    async def resolve(self, session: AsyncSession, user_id: uuid.UUID,
                      platform_id: Optional[uuid.UUID] = None,
                      sub_account_ids: Iterable[uuid.UUID] = (),
                      lock: bool = False) -> OwnershipScope:
        """
        Resolve the chain for one request.

        Sub-accounts must belong to the caller and, when a platform is given,
        to that platform.
        """
        scope = OwnershipScope(user_id=user_id)
        if platform_id is not None:
            scope.platform = await self.platform(session, user_id, platform_id)
        ids = list(sub_account_ids)
        if ids:
            scope.sub_accounts = await self.sub_accounts(
                session, user_id, ids, lock=lock, platform_id=platform_id
            )
        return scope


__all__ = ["OwnershipResolver", "OwnershipScope"]
