"""
TradeLedger Database Models
SQLAlchemy 2.0 ORM models for users, platforms, sub-accounts and the ledger.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from ..security.crypto import mask
from ..utils.helpers import to_utc, utc_now
from .connection import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Monetary amounts: 8 fractional digits
Money = Numeric(20, 8)

# Partial-index predicate for soft-deletable rows
ACTIVE_ROW = text("deleted_at IS NULL")


# ============================================================================
# Enums
# ============================================================================

class UserRole(str, enum.Enum):
    """User role enumeration."""
    USER = "user"
    ADMIN = "admin"


class OAuthProvider(str, enum.Enum):
    """Supported identity providers."""
    GOOGLE = "google"
    WECHAT = "wechat"


class PlatformType(str, enum.Enum):
    """Trading platform type enumeration."""
    REAL = "real"
    VIRTUAL = "virtual"
    BACKTEST = "backtest"


class PlatformStatus(str, enum.Enum):
    """Trading platform status enumeration."""
    ACTIVE = "active"
    INACTIVE = "inactive"


class TransactionDirection(str, enum.Enum):
    """Ledger direction enumeration."""
    CREDIT = "credit"
    DEBIT = "debit"


class LogSource(str, enum.Enum):
    """Known trading log sources; other values are accepted as-is."""
    MANUAL = "manual"
    BOT = "bot"


class EventStatus(str, enum.Enum):
    """External event processing status."""
    PROCESSED = "processed"
    FAILED = "failed"


# ============================================================================
# Identity
# ============================================================================

class User(Base):
    """
    User model. Created on first OAuth linkage, soft-deleted when disabled.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    username: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default=UserRole.USER.value, nullable=False)

    settings: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    info: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("username", name="uq_users_username"),
        UniqueConstraint("email", name="uq_users_email"),
        Index("ix_users_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username}, role={self.role})>"

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


class OAuthIdentity(Base):
    """
    Link between a provider-side account and a User.

    Provider tokens are stored encrypted.
    """
    __tablename__ = "oauth_identities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    encrypted_access_token: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    info: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )

    __table_args__ = (
        UniqueConstraint("provider", "provider_user_id", name="uq_oauth_identities_provider_user"),
        Index("ix_oauth_identities_user_provider", "user_id", "provider"),
    )

    def __repr__(self) -> str:
        return f"<OAuthIdentity(provider={self.provider}, user_id={self.user_id})>"


# ============================================================================
# Platforms and sub-accounts
# ============================================================================

class Platform(Base):
    """
    Trading platform: a user-owned pointer at an external venue.

    API key and secret are kept as ciphertext; the keyed hashes back the
    "unique while active" rules without storing plaintext.
    """
    __tablename__ = "platforms"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=PlatformStatus.ACTIVE.value, nullable=False)

    # Credentials
    encrypted_api_key: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_api_secret: Mapped[str] = mapped_column(Text, nullable=False)
    api_key_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    api_secret_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    info: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'inactive')", name="ck_platforms_status"),
        Index(
            "platforms_user_name_active_unique", "user_id", "name",
            unique=True, postgresql_where=ACTIVE_ROW, sqlite_where=ACTIVE_ROW
        ),
        Index(
            "platforms_user_api_key_active_unique", "user_id", "api_key_hash",
            unique=True, postgresql_where=ACTIVE_ROW, sqlite_where=ACTIVE_ROW
        ),
        Index(
            "platforms_user_api_secret_active_unique", "user_id", "api_secret_hash",
            unique=True, postgresql_where=ACTIVE_ROW, sqlite_where=ACTIVE_ROW
        ),
        Index("ix_platforms_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Platform(id={self.id}, name={self.name}, type={self.type})>"


class SecurePlatform(Base):
    """
    Credential usage record, one per platform.

    Touched whenever the platform's credentials are decrypted for use.
    """
    __tablename__ = "secure_platforms"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    platform_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("platforms.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    masked_api_key: Mapped[str] = mapped_column(String(64), nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    use_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_failure_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    security_settings: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<SecurePlatform(platform_id={self.platform_id}, uses={self.use_count})>"


class SubAccount(Base):
    """
    Single-symbol balance bucket within a platform.
    """
    __tablename__ = "sub_accounts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    platform_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("platforms.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    info: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_sub_accounts_balance_non_negative"),
        Index(
            "sub_accounts_platform_name_active_unique", "platform_id", "name",
            unique=True, postgresql_where=ACTIVE_ROW, sqlite_where=ACTIVE_ROW
        ),
        Index("ix_sub_accounts_user_symbol", "user_id", "symbol"),
    )

    def __repr__(self) -> str:
        return f"<SubAccount(id={self.id}, name={self.name}, symbol={self.symbol}, balance={self.balance})>"


# ============================================================================
# Ledger
# ============================================================================

class Transaction(Base):
    """
    Immutable ledger row: one debit or credit against one sub-account.
    """
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    platform_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("platforms.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    sub_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("sub_accounts.id", ondelete="RESTRICT"),
        nullable=False
    )

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    closing_balance: Mapped[Decimal] = mapped_column(Money, nullable=False)

    # Trade context
    price: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    quote_symbol: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    info: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("direction IN ('credit', 'debit')", name="ck_transactions_direction"),
        CheckConstraint("amount >= 0", name="ck_transactions_amount_non_negative"),
        CheckConstraint("closing_balance >= 0", name="ck_transactions_closing_balance_non_negative"),
        Index("ix_transactions_sub_account_time", "sub_account_id", "timestamp"),
        Index("ix_transactions_user_time", "user_id", "timestamp"),
        Index("ix_transactions_platform_time", "platform_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, {self.direction} {self.amount}, "
            f"closing={self.closing_balance})>"
        )


class TradingLog(Base):
    """
    Append-only business event. Business types drive ledger mutations.
    """
    __tablename__ = "trading_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    platform_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("platforms.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    sub_account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("sub_accounts.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("transactions.id", ondelete="RESTRICT"),
        nullable=True
    )

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    event_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    info: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )

    __table_args__ = (
        Index("ix_trading_logs_user_time", "user_id", "timestamp"),
        Index("ix_trading_logs_platform_time", "platform_id", "timestamp"),
        Index("ix_trading_logs_type", "type", "timestamp"),
        Index("ix_trading_logs_event_time", "event_time"),
    )

    def __repr__(self) -> str:
        return f"<TradingLog(id={self.id}, type={self.type}, source={self.source})>"

    @property
    def is_bot_generated(self) -> bool:
        return self.source == LogSource.BOT.value


# ============================================================================
# API keys and idempotency
# ============================================================================

class UserAPIKey(Base):
    """
    Per-user API key. Only the ciphertext and keyed hash are stored.
    """
    __tablename__ = "user_api_keys"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    encrypted_key: Mapped[str] = mapped_column(Text, nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    permissions: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )

    __table_args__ = (
        Index(
            "user_api_keys_hash_active_unique", "key_hash",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_user_api_keys_user_active", "user_id", "is_active"),
    )

    # Plaintext token, set only on the instance returned at issuance; never mapped
    plaintext_key = None

    def __repr__(self) -> str:
        return f"<UserAPIKey(id={self.id}, name={self.name}, active={self.is_active})>"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the key's expiry has passed."""
        if self.expires_at is None:
            return False
        return to_utc(self.expires_at) <= (now or utc_now())

    def has_permission(self, permission: str) -> bool:
        """Exact, case-sensitive match or the "*" wildcard."""
        perms = self.permissions or []
        return permission in perms or "*" in perms

    def masked_key(self, visible_tail: int = 4) -> str:
        """Masked plaintext, or "****" once the plaintext is gone."""
        return mask(self.plaintext_key, visible_tail)


class EventProcessing(Base):
    """
    Idempotency record for externally identified events.
    """
    __tablename__ = "event_processing"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    trading_log_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("trading_logs.id", ondelete="SET NULL"),
        nullable=True
    )

    status: Mapped[str] = mapped_column(String(20), default=EventStatus.PROCESSED.value, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    info: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_event_processing_event_id"),
        Index("ix_event_processing_status", "status", "retry_count"),
        Index("ix_event_processing_type_time", "event_type", "processed_at"),
    )

    def __repr__(self) -> str:
        return f"<EventProcessing(event_id={self.event_id}, status={self.status}, retries={self.retry_count})>"


# ============================================================================
# Model exports
# ============================================================================

__all__ = [
    # Base
    "Base",
    # Enums
    "UserRole",
    "OAuthProvider",
    "PlatformType",
    "PlatformStatus",
    "TransactionDirection",
    "LogSource",
    "EventStatus",
    # Models
    "User",
    "OAuthIdentity",
    "Platform",
    "SecurePlatform",
    "SubAccount",
    "Transaction",
    "TradingLog",
    "UserAPIKey",
    "EventProcessing",
]
