"""
TradeLedger Transaction Service
Read-only, ownership-scoped access to the ledger rows.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.connection import DatabaseTransaction
from ..database.models import Transaction
from ..ledger.ownership import OwnershipResolver
from ..schemas import Page, TransactionFilter, TransactionResponse
from ..services.query import paginate
from ..utils.validators import check_time_range

logger = logging.getLogger(__name__)


class TransactionService:
    """Transaction queries; transactions are written only by the balance ledger."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession],
                 resolver: Optional[OwnershipResolver] = None):
        self.session_maker = session_maker
        self.resolver = resolver or OwnershipResolver()

    async def get_transaction(self, user_id: uuid.UUID, transaction_id: uuid.UUID) -> TransactionResponse:
        async with DatabaseTransaction(self.session_maker) as tx:
            transaction = await self.resolver.transaction(tx.session, user_id, transaction_id)
            return TransactionResponse.model_validate(transaction)

    async def list_user_transactions(self, user_id: uuid.UUID,
                                     filters: Optional[TransactionFilter] = None) -> Page[TransactionResponse]:
        filters = filters or TransactionFilter()
        filters.check_ranges()
        async with DatabaseTransaction(self.session_maker) as tx:
            query = select(Transaction).where(Transaction.user_id == user_id)
            return await self._page(tx.session, query, filters)

    async def list_sub_account_transactions(self, user_id: uuid.UUID, sub_account_id: uuid.UUID,
                                            filters: Optional[TransactionFilter] = None) -> Page[TransactionResponse]:
        filters = filters or TransactionFilter()
        filters.check_ranges()
        async with DatabaseTransaction(self.session_maker) as tx:
            await self.resolver.sub_account(tx.session, user_id, sub_account_id)
            query = select(Transaction).where(
                Transaction.user_id == user_id,
                Transaction.sub_account_id == sub_account_id,
            )
            return await self._page(tx.session, query, filters)

    async def list_platform_transactions(self, user_id: uuid.UUID, platform_id: uuid.UUID,
                                         filters: Optional[TransactionFilter] = None) -> Page[TransactionResponse]:
        filters = filters or TransactionFilter()
        filters.check_ranges()
        async with DatabaseTransaction(self.session_maker) as tx:
            await self.resolver.platform(tx.session, user_id, platform_id)
            query = select(Transaction).where(
                Transaction.user_id == user_id,
                Transaction.platform_id == platform_id,
            )
            return await self._page(tx.session, query, filters)

    async def list_by_time_range(self, user_id: uuid.UUID, start: datetime, end: datetime,
                                 filters: Optional[TransactionFilter] = None) -> Page[TransactionResponse]:
        """Caller's transactions between ``start`` and ``end`` inclusive."""
        check_time_range(start, end, "start_time")
        filters = (filters or TransactionFilter()).model_copy(update={"start_date": start, "end_date": end})
        filters.check_ranges()
        async with DatabaseTransaction(self.session_maker) as tx:
            query = select(Transaction).where(Transaction.user_id == user_id)
            return await self._page(tx.session, query, filters)

    async def admin_list_by_time_range(self, start: datetime, end: datetime,
                                       filters: Optional[TransactionFilter] = None) -> Page[TransactionResponse]:
        """Admin: transactions of every user in the window."""
        check_time_range(start, end, "start_time")
        filters = (filters or TransactionFilter()).model_copy(update={"start_date": start, "end_date": end})
        filters.check_ranges()
        async with DatabaseTransaction(self.session_maker) as tx:
            return await self._page(tx.session, select(Transaction), filters)

    async def _page(self, session: AsyncSession, query,
                    filters: TransactionFilter) -> Page[TransactionResponse]:
        if filters.direction:
            query = query.where(Transaction.direction == filters.direction)
        if filters.reason:
            query = query.where(Transaction.reason == filters.reason)
        if filters.start_date is not None:
            query = query.where(Transaction.timestamp >= filters.start_date)
        if filters.end_date is not None:
            query = query.where(Transaction.timestamp <= filters.end_date)
        if filters.min_amount is not None:
            query = query.where(Transaction.amount >= filters.min_amount)
        if filters.max_amount is not None:
            query = query.where(Transaction.amount <= filters.max_amount)

        rows, total = await paginate(
            session, query, filters.limit, filters.offset,
            Transaction.timestamp.desc(), Transaction.id,
        )
        return Page[TransactionResponse].build(
            [TransactionResponse.model_validate(row) for row in rows],
            total, filters.limit, filters.offset,
        )


__all__ = ["TransactionService"]
