"""
TradeLedger Sub-Account Service
Single-symbol balance buckets within a trading platform.
"""

import logging
import uuid
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.connection import DatabaseTransaction
from ..database.models import SubAccount
from ..errors import IntegrityViolationError
from ..ledger.balance import BalanceLedger
from ..ledger.ownership import OwnershipResolver
from ..schemas import (
    BalanceUpdateResponse,
    CreateSubAccountRequest,
    SubAccountResponse,
    TransactionResponse,
    UpdateBalanceRequest,
    UpdateSubAccountRequest,
)
from ..utils.helpers import deep_merge, round_decimal, utc_now

logger = logging.getLogger(__name__)


class SubAccountService:
    """Sub-account CRUD plus manual balance adjustments through the ledger."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession],
                 ledger: Optional[BalanceLedger] = None,
                 resolver: Optional[OwnershipResolver] = None):
        self.session_maker = session_maker
        self.ledger = ledger or BalanceLedger()
        self.resolver = resolver or OwnershipResolver()

    async def create_sub_account(self, user_id: uuid.UUID,
                                 request: CreateSubAccountRequest) -> SubAccountResponse:
        """
        Create an empty sub-account on one of the caller's platforms.

        Raises:
            NotFoundError: Platform missing or not the caller's.
            ConflictError: Name already used by an active sub-account of the platform.
        """
        async with DatabaseTransaction(self.session_maker) as tx:
            session = tx.session
            platform = await self.resolver.platform(session, user_id, request.platform_id)

            info = dict(request.info or {})
            info.update({"created_by": "api", "api_version": "v1"})

            account = SubAccount(
                id=uuid.uuid4(),
                user_id=user_id,
                platform_id=platform.id,
                name=request.name,
                symbol=request.symbol,
                balance=Decimal("0"),
                info=info,
            )
            session.add(account)
            await session.flush()
            response = SubAccountResponse.model_validate(account)

        logger.info(f"Sub-account {account.id} ({account.symbol}) created on platform {platform.id}")
        return response

    async def get_sub_account(self, user_id: uuid.UUID, sub_account_id: uuid.UUID) -> SubAccountResponse:
        async with DatabaseTransaction(self.session_maker) as tx:
            account = await self.resolver.sub_account(tx.session, user_id, sub_account_id)
            return SubAccountResponse.model_validate(account)

    async def list_sub_accounts(self, user_id: uuid.UUID,
                                platform_id: Optional[uuid.UUID] = None) -> List[SubAccountResponse]:
        async with DatabaseTransaction(self.session_maker) as tx:
            session = tx.session
            query = select(SubAccount).where(
                SubAccount.user_id == user_id, SubAccount.deleted_at.is_(None)
            )
            if platform_id is not None:
                await self.resolver.platform(session, user_id, platform_id)
                query = query.where(SubAccount.platform_id == platform_id)
            result = await session.execute(query.order_by(SubAccount.created_at, SubAccount.id))
            return [SubAccountResponse.model_validate(a) for a in result.scalars().all()]

    async def list_by_symbol(self, user_id: uuid.UUID, symbol: str) -> List[SubAccountResponse]:
        async with DatabaseTransaction(self.session_maker) as tx:
            result = await tx.session.execute(
                select(SubAccount)
                .where(
                    SubAccount.user_id == user_id,
                    SubAccount.symbol == symbol,
                    SubAccount.deleted_at.is_(None),
                )
                .order_by(SubAccount.created_at, SubAccount.id)
            )
            return [SubAccountResponse.model_validate(a) for a in result.scalars().all()]

    async def update_sub_account(self, user_id: uuid.UUID, sub_account_id: uuid.UUID,
                                 request: UpdateSubAccountRequest) -> SubAccountResponse:
        async with DatabaseTransaction(self.session_maker) as tx:
            session = tx.session
            account = await self.resolver.sub_account(session, user_id, sub_account_id, lock=True)

            if request.name is not None:
                account.name = request.name
            if request.symbol is not None:
                account.symbol = request.symbol
            if request.info is not None:
                account.info = deep_merge(account.info or {}, request.info)
            account.updated_at = utc_now()

            await session.flush()
            return SubAccountResponse.model_validate(account)

    async def update_balance(self, user_id: uuid.UUID, sub_account_id: uuid.UUID,
                             request: UpdateBalanceRequest) -> BalanceUpdateResponse:
        """Manual credit or debit, recorded as a transaction like any event."""
        async with DatabaseTransaction(self.session_maker) as tx:
            session = tx.session
            account = await self.resolver.sub_account(session, user_id, sub_account_id, lock=True)
            transaction = await self.ledger.apply(
                session,
                account.id,
                new_balance=None,
                amount=request.amount,
                direction=request.direction,
                reason=request.reason,
                info=request.info or {},
            )
            account.updated_at = utc_now()
            await session.flush()
            response = BalanceUpdateResponse(
                sub_account=SubAccountResponse.model_validate(account),
                transaction=TransactionResponse.model_validate(transaction),
            )

        logger.info(
            f"Manual {request.direction} of {request.amount} on sub-account {sub_account_id}, "
            f"closing {response.transaction.closing_balance}"
        )
        return response

    async def delete_sub_account(self, user_id: uuid.UUID, sub_account_id: uuid.UUID) -> None:
        """Soft delete; only empty sub-accounts can go."""
        async with DatabaseTransaction(self.session_maker) as tx:
            account = await self.resolver.sub_account(tx.session, user_id, sub_account_id, lock=True)
            if round_decimal(account.balance) != 0:
                raise IntegrityViolationError(
                    "cannot delete sub-account with non-zero balance", relation="balance"
                )
            account.deleted_at = utc_now()

        logger.info(f"Sub-account {sub_account_id} deleted")


__all__ = ["SubAccountService"]
