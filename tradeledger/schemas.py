"""
TradeLedger Schemas
Pydantic models for requests, filters and responses.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, Generic, List, Optional, TypeVar

from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field

from .config.settings import settings
from .utils.helpers import LEDGER_PLACES, decimal_places, to_utc
from .utils.validators import check_amount_range, check_time_range

# Naive datetimes are read as UTC
UTCDateTime = Annotated[datetime, AfterValidator(to_utc)]


def _ledger_precision(value: Decimal) -> Decimal:
    if decimal_places(value) > LEDGER_PLACES:
        raise ValueError(f"must have at most {LEDGER_PLACES} decimal places")
    return value


LedgerAmount = Annotated[Decimal, Field(ge=0), AfterValidator(_ledger_precision)]

T = TypeVar("T")


class ORMModel(BaseModel):
    """Response base reading attributes off ORM rows."""
    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Pagination
# ============================================================================

class Page(BaseModel, Generic[T]):
    """List envelope."""
    items: List[T]
    total: int
    limit: int
    offset: int
    has_more: bool

    @classmethod
    def build(cls, items: List[Any], total: int, limit: int, offset: int) -> "Page":
        return cls(
            items=items,
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + len(items) < total,
        )


class PageParams(BaseModel):
    limit: int = Field(default=settings.query.default_limit, ge=1, le=settings.query.max_limit)
    offset: int = Field(default=0, ge=0)


# ============================================================================
# Auth
# ============================================================================

class LoginRequest(BaseModel):
    provider: str = Field(..., min_length=1, max_length=20)
    redirect_url: Optional[str] = None


class LoginResponse(BaseModel):
    auth_url: str
    state: str


class CallbackRequest(BaseModel):
    provider: str = Field(..., min_length=1, max_length=20)
    code: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class UserResponse(ORMModel):
    id: uuid.UUID
    username: str
    email: str
    avatar: Optional[str] = None
    role: str
    settings: Dict[str, Any] = Field(default_factory=dict)
    info: Dict[str, Any] = Field(default_factory=dict)
    created_at: UTCDateTime
    updated_at: UTCDateTime


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    user: Optional[UserResponse] = None


# ============================================================================
# Users
# ============================================================================

class UpdateUserRequest(BaseModel):
    username: Optional[str] = Field(default=None, min_length=3, max_length=50)
    avatar: Optional[str] = Field(default=None, max_length=500)
    settings: Optional[Dict[str, Any]] = None
    info: Optional[Dict[str, Any]] = None


class UserStatsResponse(BaseModel):
    total_platforms: int
    active_platforms: int
    total_sub_accounts: int
    total_transactions: int
    total_trading_logs: int
    balances: Dict[str, Decimal] = Field(default_factory=dict)


# ============================================================================
# Platforms
# ============================================================================

class CreatePlatformRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: str = Field(..., min_length=1, max_length=50)
    api_key: str = Field(..., min_length=1, max_length=500)
    api_secret: str = Field(..., min_length=1, max_length=500)
    info: Dict[str, Any] = Field(default_factory=dict)


class UpdatePlatformRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[str] = Field(default=None, min_length=1, max_length=50)
    status: Optional[str] = None
    api_key: Optional[str] = Field(default=None, min_length=1, max_length=500)
    api_secret: Optional[str] = Field(default=None, min_length=1, max_length=500)
    info: Optional[Dict[str, Any]] = None


class PlatformResponse(BaseModel):
    """Platform with masked credentials."""
    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    type: str
    status: str
    api_key: str
    api_secret: str
    info: Dict[str, Any] = Field(default_factory=dict)
    created_at: UTCDateTime
    updated_at: UTCDateTime


class PlatformCredentials(BaseModel):
    platform_id: uuid.UUID
    api_key: str
    api_secret: str


# ============================================================================
# Sub-accounts and transactions
# ============================================================================

class CreateSubAccountRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    platform_id: uuid.UUID = Field(validation_alias=AliasChoices("platform_id", "trading_id"))
    name: str = Field(..., min_length=1, max_length=100)
    symbol: str = Field(..., min_length=1, max_length=20)
    info: Dict[str, Any] = Field(default_factory=dict)


class UpdateSubAccountRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    symbol: Optional[str] = Field(default=None, min_length=1, max_length=20)
    info: Optional[Dict[str, Any]] = None


class UpdateBalanceRequest(BaseModel):
    amount: LedgerAmount
    direction: str = Field(..., pattern="^(credit|debit)$")
    reason: str = Field(..., min_length=1, max_length=50)
    info: Optional[Dict[str, Any]] = None


class SubAccountResponse(ORMModel):
    id: uuid.UUID
    user_id: uuid.UUID
    platform_id: uuid.UUID
    name: str
    symbol: str
    balance: Decimal
    info: Dict[str, Any] = Field(default_factory=dict)
    created_at: UTCDateTime
    updated_at: UTCDateTime


class TransactionResponse(ORMModel):
    id: uuid.UUID
    user_id: uuid.UUID
    platform_id: uuid.UUID
    sub_account_id: uuid.UUID
    timestamp: UTCDateTime
    direction: str
    reason: str
    amount: Decimal
    closing_balance: Decimal
    price: Optional[Decimal] = None
    quote_symbol: Optional[str] = None
    info: Dict[str, Any] = Field(default_factory=dict)


class BalanceUpdateResponse(BaseModel):
    sub_account: SubAccountResponse
    transaction: TransactionResponse


class TransactionFilter(BaseModel):
    start_date: Optional[UTCDateTime] = None
    end_date: Optional[UTCDateTime] = None
    direction: Optional[str] = Field(default=None, pattern="^(credit|debit)$")
    reason: Optional[str] = None
    min_amount: Optional[Decimal] = Field(default=None, ge=0)
    max_amount: Optional[Decimal] = Field(default=None, ge=0)
    limit: int = Field(default=settings.query.default_limit, ge=1, le=settings.query.max_limit)
    offset: int = Field(default=0, ge=0)

    def check_ranges(self) -> None:
        check_time_range(self.start_date, self.end_date)
        check_amount_range(self.min_amount, self.max_amount)


# ============================================================================
# Trading logs
# ============================================================================

class CreateTradingLogRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    platform_id: uuid.UUID = Field(validation_alias=AliasChoices("platform_id", "trading_id"))
    sub_account_id: Optional[uuid.UUID] = None
    transaction_id: Optional[uuid.UUID] = None
    event_time: Optional[UTCDateTime] = None
    type: str = Field(..., min_length=1, max_length=50)
    source: str = Field(..., min_length=1, max_length=20)
    message: str = Field(..., min_length=1)
    info: Dict[str, Any] = Field(default_factory=dict)
    event_id: Optional[str] = Field(default=None, min_length=1, max_length=255)


class TradingLogResponse(ORMModel):
    id: uuid.UUID
    user_id: uuid.UUID
    platform_id: uuid.UUID
    sub_account_id: Optional[uuid.UUID] = None
    transaction_id: Optional[uuid.UUID] = None
    timestamp: UTCDateTime
    event_time: Optional[UTCDateTime] = None
    type: str
    source: str
    message: str
    info: Dict[str, Any] = Field(default_factory=dict)
    created_at: UTCDateTime


class TradingLogFilter(BaseModel):
    type: Optional[str] = None
    source: Optional[str] = None
    start_date: Optional[UTCDateTime] = None
    end_date: Optional[UTCDateTime] = None
    limit: int = Field(default=settings.query.default_limit, ge=1, le=settings.query.max_limit)
    offset: int = Field(default=0, ge=0)

    def check_ranges(self) -> None:
        check_time_range(self.start_date, self.end_date)


class EventProcessingResponse(ORMModel):
    id: uuid.UUID
    event_id: str
    event_type: str
    user_id: Optional[uuid.UUID] = None
    trading_log_id: Optional[uuid.UUID] = None
    status: str
    retry_count: int
    error_message: Optional[str] = None
    processed_at: Optional[UTCDateTime] = None


class PurgeEventsResponse(BaseModel):
    purged: int
    older_than: UTCDateTime


# ============================================================================
# API keys
# ============================================================================

class CreateAPIKeyRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    permissions: List[str] = Field(default_factory=lambda: ["read"])
    expires_at: Optional[UTCDateTime] = None


class APIKeyResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    masked_key: str
    permissions: List[str]
    is_active: bool
    last_used_at: Optional[UTCDateTime] = None
    expires_at: Optional[UTCDateTime] = None
    created_at: UTCDateTime


class APIKeyCreatedResponse(APIKeyResponse):
    """Issuance response; the only place the plaintext key is returned."""
    key: str


__all__ = [
    "Page",
    "PageParams",
    "LoginRequest",
    "LoginResponse",
    "CallbackRequest",
    "RefreshRequest",
    "AuthResponse",
    "UserResponse",
    "UpdateUserRequest",
    "UserStatsResponse",
    "CreatePlatformRequest",
    "UpdatePlatformRequest",
    "PlatformResponse",
    "PlatformCredentials",
    "CreateSubAccountRequest",
    "UpdateSubAccountRequest",
    "UpdateBalanceRequest",
    "SubAccountResponse",
    "TransactionResponse",
    "BalanceUpdateResponse",
    "TransactionFilter",
    "CreateTradingLogRequest",
    "TradingLogResponse",
    "TradingLogFilter",
    "EventProcessingResponse",
    "PurgeEventsResponse",
    "CreateAPIKeyRequest",
    "APIKeyResponse",
    "APIKeyCreatedResponse",
]
