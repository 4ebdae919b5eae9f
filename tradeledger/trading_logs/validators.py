"""
TradeLedger Trading Log Validators
Typed validation of trading log ``info`` payloads.

Five log types drive ledger mutations and carry a fixed payload schema:
``long``, ``short`` and ``stop_loss`` (two-sided trades) and ``deposit`` and
``withdraw`` (one-sided flows). Validation stops at the first failing field.
"""

import math
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Union

from ..config.settings import settings
from ..errors import ValidationError
from ..utils.helpers import decimal_places, to_decimal

LONG = "long"
SHORT = "short"
STOP_LOSS = "stop_loss"
DEPOSIT = "deposit"
WITHDRAW = "withdraw"

TRADE_TYPES = frozenset({LONG, SHORT, STOP_LOSS})
FLOW_TYPES = frozenset({DEPOSIT, WITHDRAW})
BUSINESS_LOGIC_TYPES = TRADE_TYPES | FLOW_TYPES

MAX_SYMBOL_LENGTH = 20
MAX_TYPE_LENGTH = 50


# ============================================================================
# Typed payloads
# ============================================================================

@dataclass(frozen=True)
class TradeInfo:
    """Two-sided trade: stock traded against currency."""
    stock_account_id: uuid.UUID
    currency_account_id: uuid.UUID
    price: Decimal
    volume: Decimal
    fee: Decimal
    stock: str
    currency: str

    @property
    def account_ids(self):
        return (self.stock_account_id, self.currency_account_id)


@dataclass(frozen=True)
class LongInfo(TradeInfo):
    pass


@dataclass(frozen=True)
class ShortInfo(TradeInfo):
    pass


@dataclass(frozen=True)
class StopLossInfo(TradeInfo):
    pass


@dataclass(frozen=True)
class FlowInfo:
    """One-sided flow into or out of a single account."""
    account_id: uuid.UUID
    amount: Decimal
    currency: str

    @property
    def account_ids(self):
        return (self.account_id,)


@dataclass(frozen=True)
class DepositInfo(FlowInfo):
    pass


@dataclass(frozen=True)
class WithdrawInfo(FlowInfo):
    pass


BusinessInfo = Union[LongInfo, ShortInfo, StopLossInfo, DepositInfo, WithdrawInfo]

_TRADE_CLASSES = {LONG: LongInfo, SHORT: ShortInfo, STOP_LOSS: StopLossInfo}
_FLOW_CLASSES = {DEPOSIT: DepositInfo, WITHDRAW: WithdrawInfo}


def is_business_logic_type(log_type: str) -> bool:
    return log_type in BUSINESS_LOGIC_TYPES


# ============================================================================
# Validator
# ============================================================================

class TradingLogValidator:
    """
    Validates log types and business-logic payloads.

    Numeric fields accept int, float and Decimal values (booleans and strings
    are rejected) and are normalised to Decimal.
    """

    def __init__(self, max_decimal_places: Optional[int] = None):
        self.max_decimal_places = (
            settings.security.max_decimal_places if max_decimal_places is None else max_decimal_places
        )

    def validate_type(self, log_type: Optional[str]) -> str:
        if not log_type:
            raise ValidationError("type", "type cannot be empty", "trading_log")
        if len(log_type) > MAX_TYPE_LENGTH:
            raise ValidationError("type", f"must not exceed {MAX_TYPE_LENGTH} characters", "trading_log")
        return log_type

    def validate_info(self, info: Optional[Mapping[str, Any]], log_type: str) -> Optional[BusinessInfo]:
        """
        Validate ``info`` for ``log_type``.

        Returns the typed payload for business-logic types and None for every
        other type, whose info is accepted as-is.
        """
        if not is_business_logic_type(log_type):
            return None
        if not isinstance(info, Mapping):
            raise ValidationError("info", "is required", log_type)

        if log_type in TRADE_TYPES:
            return self._validate_trade(info, log_type)
        return self._validate_flow(info, log_type)

    def validate_decimal_precision(self, value: Decimal, field_name: str,
                                   max_decimals: Optional[int] = None) -> None:
        max_decimals = self.max_decimal_places if max_decimals is None else max_decimals
        if decimal_places(value) > max_decimals:
            raise ValidationError(
                field_name, f"must have at most {max_decimals} decimal places", "precision"
            )

    # ------------------------------------------------------------------
    # Schemas
    # ------------------------------------------------------------------

    def _validate_trade(self, info: Mapping[str, Any], log_type: str) -> TradeInfo:
        stock_account_id = self._uuid(info, "stock_account_id", log_type)
        currency_account_id = self._uuid(info, "currency_account_id", log_type)
        price = self._number(info, "price", log_type, allow_zero=False)
        volume = self._number(info, "volume", log_type, allow_zero=False)
        stock = self._symbol(info, "stock", log_type)
        currency = self._symbol(info, "currency", log_type)
        fee = self._number(info, "fee", log_type, allow_zero=True)

        if stock_account_id == currency_account_id:
            raise ValidationError(
                "accounts", "stock_account_id and currency_account_id must be different", log_type
            )
        if log_type != LONG and fee > price * volume:
            raise ValidationError("fee", "must not exceed trade proceeds", log_type)

        return _TRADE_CLASSES[log_type](
            stock_account_id=stock_account_id,
            currency_account_id=currency_account_id,
            price=price,
            volume=volume,
            fee=fee,
            stock=stock,
            currency=currency,
        )

    def _validate_flow(self, info: Mapping[str, Any], log_type: str) -> FlowInfo:
        account_id = self._uuid(info, "account_id", log_type)
        amount = self._number(info, "amount", log_type, allow_zero=False)
        currency = self._symbol(info, "currency", log_type)
        return _FLOW_CLASSES[log_type](account_id=account_id, amount=amount, currency=currency)

    # ------------------------------------------------------------------
    # Field extractors
    # ------------------------------------------------------------------

    def _uuid(self, info: Mapping[str, Any], field_name: str, log_type: str) -> uuid.UUID:
        if field_name not in info or info[field_name] is None:
            raise ValidationError(field_name, "is required", log_type)
        raw = info[field_name]
        if not isinstance(raw, str):
            raise ValidationError(field_name, "must be a string UUID", log_type)
        try:
            return uuid.UUID(raw)
        except ValueError:
            raise ValidationError(field_name, "must be a valid UUID", log_type) from None

    def _number(self, info: Mapping[str, Any], field_name: str, log_type: str,
                allow_zero: bool) -> Decimal:
        message = "must be a non-negative number" if allow_zero else "must be a positive number"
        if field_name not in info or info[field_name] is None:
            raise ValidationError(field_name, "is required", log_type)

        value = extract_number(info[field_name])
        if value is None or (value < 0 if allow_zero else value <= 0):
            raise ValidationError(field_name, message, log_type)

        self.validate_decimal_precision(value, field_name)
        return value

    def _symbol(self, info: Mapping[str, Any], field_name: str, log_type: str) -> str:
        if field_name not in info or info[field_name] is None:
            raise ValidationError(field_name, "is required", log_type)
        raw = info[field_name]
        if not isinstance(raw, str) or not raw or len(raw) > MAX_SYMBOL_LENGTH:
            raise ValidationError(
                field_name,
                f"must be a non-empty string with maximum {MAX_SYMBOL_LENGTH} characters",
                log_type,
            )
        return raw


def extract_number(value: Any) -> Optional[Decimal]:
    """Decimal from an int, float or Decimal; None for anything else or non-finite values."""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    number = to_decimal(value)
    if not number.is_finite():
        return None
    return number


def payload_summary(info: BusinessInfo) -> Dict[str, Any]:
    """Flat dict of a typed payload for logging (ids and amounts only)."""
    if isinstance(info, TradeInfo):
        return {
            "stock_account_id": str(info.stock_account_id),
            "currency_account_id": str(info.currency_account_id),
            "volume": str(info.volume),
            "price": str(info.price),
        }
    return {"account_id": str(info.account_id), "amount": str(info.amount)}


__all__ = [
    "BUSINESS_LOGIC_TYPES",
    "TRADE_TYPES",
    "FLOW_TYPES",
    "TradeInfo",
    "LongInfo",
    "ShortInfo",
    "StopLossInfo",
    "FlowInfo",
    "DepositInfo",
    "WithdrawInfo",
    "BusinessInfo",
    "TradingLogValidator",
    "extract_number",
    "is_business_logic_type",
    "payload_summary",
]
