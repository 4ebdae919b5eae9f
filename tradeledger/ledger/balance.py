"""
TradeLedger Balance Ledger
The only code path that changes a sub-account balance.

``apply`` locks the sub-account row, checks the requested delta against the
locked pre-state, writes the new balance and appends a Transaction whose
closing balance equals it, all inside the caller's atomic scope.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import SubAccount, Transaction, TransactionDirection
from ..errors import InsufficientBalanceError, NotFoundError, ValidationError
from ..utils.helpers import (
    LEDGER_PLACES,
    decimal_places,
    json_safe,
    next_timestamp,
    round_decimal,
    to_decimal,
)

logger = logging.getLogger(__name__)

Number = Union[int, float, str, Decimal]


class BalanceLedger:
    """Applies signed deltas to sub-accounts under row locks."""

    async def lock(self, session: AsyncSession, sub_account_id: uuid.UUID) -> SubAccount:
        """SELECT ... FOR UPDATE the sub-account, refreshing any cached state."""
        result = await session.execute(
            select(SubAccount)
            .where(SubAccount.id == sub_account_id, SubAccount.deleted_at.is_(None))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise NotFoundError("sub-account")
        return account

    async def last_timestamp(self, session: AsyncSession, sub_account_id: uuid.UUID):
        result = await session.execute(
            select(func.max(Transaction.timestamp)).where(Transaction.sub_account_id == sub_account_id)
        )
        return result.scalar_one_or_none()

    async def apply(
        self,
        session: AsyncSession,
        sub_account_id: uuid.UUID,
        new_balance: Optional[Number],
        amount: Number,
        direction: str,
        reason: str,
        info: Optional[Dict[str, Any]] = None,
        price: Optional[Number] = None,
        quote_symbol: Optional[str] = None,
    ) -> Transaction:
        """
        Apply one debit or credit.

        Args:
            session: Session of the enclosing atomic scope.
            sub_account_id: Target sub-account.
            new_balance: Expected balance after the change, or None to derive it.
            amount: Non-negative magnitude of the change.
            direction: "credit" or "debit".
            reason: Event kind tag or "deposit"/"withdraw".
            info: Metadata stored on the transaction.

        Returns:
            Transaction: The appended row (flushed, id assigned).

        Raises:
            ValidationError: Bad direction, negative or over-precise amount, or a pre-computed
                balance that disagrees with the locked pre-state.
            InsufficientBalanceError: The debit would take the balance below zero.
        """
        if direction not in (TransactionDirection.CREDIT.value, TransactionDirection.DEBIT.value):
            raise ValidationError("direction", "must be credit or debit")

        amount = to_decimal(amount)
        if amount < 0:
            raise ValidationError("amount", "must be a non-negative number")
        if decimal_places(amount) > LEDGER_PLACES:
            raise ValidationError("amount", f"must have at most {LEDGER_PLACES} decimal places", "precision")
        amount = round_decimal(amount)

        account = await self.lock(session, sub_account_id)
        current = round_decimal(account.balance)

        if direction == TransactionDirection.CREDIT.value:
            expected = current + amount
        else:
            expected = current - amount
            if expected < 0:
                raise InsufficientBalanceError(required=amount, available=current, account=account.name)

        if new_balance is not None:
            new_balance = round_decimal(new_balance)
            if new_balance < 0:
                raise InsufficientBalanceError(required=amount, available=current, account=account.name)
            if new_balance != expected:
                raise ValidationError(
                    "new_balance",
                    f"must equal current balance {current} {'+' if direction == 'credit' else '-'} {amount}",
                )

        timestamp = next_timestamp(await self.last_timestamp(session, account.id))

        account.balance = expected
        transaction = Transaction(
            id=uuid.uuid4(),
            user_id=account.user_id,
            platform_id=account.platform_id,
            sub_account_id=account.id,
            timestamp=timestamp,
            direction=direction,
            reason=reason,
            amount=amount,
            closing_balance=expected,
            price=round_decimal(price) if price is not None else None,
            quote_symbol=quote_symbol,
            info=json_safe(info or {}),
        )
        session.add(transaction)
        await session.flush()

        logger.debug(
            f"Ledger {direction} {amount} on sub-account {account.id} ({reason}), closing {expected}"
        )
        return transaction


__all__ = ["BalanceLedger"]
