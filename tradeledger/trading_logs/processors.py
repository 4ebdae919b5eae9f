"""
TradeLedger Event Processors
Balance semantics for the business-logic trading log types.

Processors run inside the atomic scope opened by the trading log service and
receive sub-accounts that are already ownership-checked and row-locked.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import SubAccount, Transaction, TransactionDirection
from ..errors import InsufficientBalanceError, SymbolMismatchError
from ..ledger.balance import BalanceLedger
from ..utils.helpers import round_decimal
from .validators import (
    DEPOSIT,
    LONG,
    SHORT,
    STOP_LOSS,
    WITHDRAW,
    BusinessInfo,
    FlowInfo,
    TradeInfo,
)

logger = logging.getLogger(__name__)

CREDIT = TransactionDirection.CREDIT.value
DEBIT = TransactionDirection.DEBIT.value

# Deposits and withdrawals are valued 1:1 in their own currency
FLOW_PRICE = Decimal("1")


@dataclass
class ProcessingResult:
    """Rows touched by one processed event."""
    transactions: List[Transaction] = field(default_factory=list)
    updated_accounts: List[SubAccount] = field(default_factory=list)
    primary_account_id: Optional[uuid.UUID] = None

    @property
    def transaction_ids(self) -> List[uuid.UUID]:
        return [t.id for t in self.transactions]

    @property
    def primary_transaction_id(self):
        return self.transactions[0].id if self.transactions else None


class EventProcessor(ABC):
    """Base class: one processor per business-logic type."""

    kind: str = ""

    def __init__(self, ledger: BalanceLedger):
        self.ledger = ledger

    @abstractmethod
    async def process(
        self,
        session: AsyncSession,
        info: BusinessInfo,
        accounts: Mapping[uuid.UUID, SubAccount],
        log_info: Dict[str, Any],
    ) -> ProcessingResult:
        """Apply the event's deltas; raise to abort the enclosing scope."""


# ============================================================================
# Two-sided trades
# ============================================================================

class LongProcessor(EventProcessor):
    """Buy stock with currency: credit volume, debit price * volume + fee."""

    kind = LONG

    async def process(self, session, info: TradeInfo, accounts, log_info) -> ProcessingResult:
        stock_account = accounts[info.stock_account_id]
        currency_account = accounts[info.currency_account_id]

        cost = round_decimal(info.price * info.volume + info.fee)
        available = round_decimal(currency_account.balance)
        if available < cost:
            raise InsufficientBalanceError(required=cost, available=available, account="currency account")

        stock_tx = await self.ledger.apply(
            session, stock_account.id,
            new_balance=round_decimal(stock_account.balance) + round_decimal(info.volume),
            amount=info.volume, direction=CREDIT, reason=self.kind, info=log_info,
            price=info.price, quote_symbol=info.currency,
        )
        currency_tx = await self.ledger.apply(
            session, currency_account.id,
            new_balance=available - cost,
            amount=cost, direction=DEBIT, reason=self.kind, info=log_info,
            price=info.price, quote_symbol=info.currency,
        )

        return ProcessingResult(
            transactions=[stock_tx, currency_tx],
            updated_accounts=[stock_account, currency_account],
            primary_account_id=stock_account.id,
        )


class ShortProcessor(EventProcessor):
    """Sell stock for currency: debit volume, credit price * volume - fee."""

    kind = SHORT

    async def process(self, session, info: TradeInfo, accounts, log_info) -> ProcessingResult:
        stock_account = accounts[info.stock_account_id]
        currency_account = accounts[info.currency_account_id]

        volume = round_decimal(info.volume)
        available = round_decimal(stock_account.balance)
        if available < volume:
            raise InsufficientBalanceError(required=volume, available=available, account="stock account")

        proceeds = round_decimal(info.price * info.volume - info.fee)

        stock_tx = await self.ledger.apply(
            session, stock_account.id,
            new_balance=available - volume,
            amount=volume, direction=DEBIT, reason=self.kind, info=log_info,
            price=info.price, quote_symbol=info.currency,
        )
        currency_tx = await self.ledger.apply(
            session, currency_account.id,
            new_balance=round_decimal(currency_account.balance) + proceeds,
            amount=proceeds, direction=CREDIT, reason=self.kind, info=log_info,
            price=info.price, quote_symbol=info.currency,
        )

        return ProcessingResult(
            transactions=[stock_tx, currency_tx],
            updated_accounts=[stock_account, currency_account],
            primary_account_id=stock_account.id,
        )


class StopLossProcessor(ShortProcessor):
    """Same arithmetic as short; transactions are tagged stop_loss."""

    kind = STOP_LOSS


# ============================================================================
# One-sided flows
# ============================================================================

def _check_symbol(account: SubAccount, currency: str) -> None:
    if account.symbol != currency:
        raise SymbolMismatchError(expected=account.symbol, provided=currency)


class DepositProcessor(EventProcessor):
    """Credit the target account; its symbol must match the payload currency."""

    kind = DEPOSIT

    async def process(self, session, info: FlowInfo, accounts, log_info) -> ProcessingResult:
        account = accounts[info.account_id]
        _check_symbol(account, info.currency)

        amount = round_decimal(info.amount)
        transaction = await self.ledger.apply(
            session, account.id,
            new_balance=round_decimal(account.balance) + amount,
            amount=amount, direction=CREDIT, reason=self.kind, info=log_info,
            price=FLOW_PRICE, quote_symbol=info.currency,
        )
        return ProcessingResult(
            transactions=[transaction],
            updated_accounts=[account],
            primary_account_id=account.id,
        )


class WithdrawProcessor(EventProcessor):
    """Debit the source account after a balance check."""

    kind = WITHDRAW

    async def process(self, session, info: FlowInfo, accounts, log_info) -> ProcessingResult:
        account = accounts[info.account_id]
        _check_symbol(account, info.currency)

        amount = round_decimal(info.amount)
        available = round_decimal(account.balance)
        if available < amount:
            raise InsufficientBalanceError(required=amount, available=available, account="source account")

        transaction = await self.ledger.apply(
            session, account.id,
            new_balance=available - amount,
            amount=amount, direction=DEBIT, reason=self.kind, info=log_info,
            price=FLOW_PRICE, quote_symbol=info.currency,
        )
        return ProcessingResult(
            transactions=[transaction],
            updated_accounts=[account],
            primary_account_id=account.id,
        )


# ============================================================================
# Registry
# ============================================================================

PROCESSOR_CLASSES = {
    LONG: LongProcessor,
    SHORT: ShortProcessor,
    STOP_LOSS: StopLossProcessor,
    DEPOSIT: DepositProcessor,
    WITHDRAW: WithdrawProcessor,
}


def build_processors(ledger: BalanceLedger) -> Dict[str, EventProcessor]:
    """One processor instance per business-logic type, sharing ``ledger``."""
    return {kind: cls(ledger) for kind, cls in PROCESSOR_CLASSES.items()}


__all__ = [
    "ProcessingResult",
    "EventProcessor",
    "LongProcessor",
    "ShortProcessor",
    "StopLossProcessor",
    "DepositProcessor",
    "WithdrawProcessor",
    "PROCESSOR_CLASSES",
    "build_processors",
]
