"""
TradeLedger Errors
==================
Typed domain errors surfaced by the engine and services.

Every error carries a stable ``kind`` string and renders to a structured
descriptor via ``to_dict()``. Not-found never distinguishes a missing entity
from one owned by another user.
"""

from __future__ import annotations

import enum
from decimal import Decimal
from typing import Any, Dict, Optional


class ErrorKind(str, enum.Enum):
    """Stable error classification strings."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    SYMBOL_MISMATCH = "symbol_mismatch"
    INTEGRITY_VIOLATION = "integrity_violation"
    AUTH_INVALID = "auth_invalid"
    CRYPTOGRAPHIC = "cryptographic"
    TRANSIENT = "transient"
    INTERNAL = "internal"


class ConflictKind(str, enum.Enum):
    """Sub-kinds of unique-constraint collisions."""
    DUPLICATE_NAME = "duplicate_name"
    DUPLICATE_API_KEY = "duplicate_api_key"
    DUPLICATE_API_SECRET = "duplicate_api_secret"
    DUPLICATE_SUBACCOUNT_NAME = "duplicate_subaccount_name"
    DUPLICATE_USERNAME = "duplicate_username"
    DUPLICATE_EMAIL = "duplicate_email"
    DUPLICATE_IDENTITY = "duplicate_identity"
    DUPLICATE_EVENT = "duplicate_event"


# Index / constraint names -> conflict sub-kind. Index names are declared in
# database/models.py; keep the two in step.
CONSTRAINT_CONFLICTS: Dict[str, ConflictKind] = {
    "platforms_user_name_active_unique": ConflictKind.DUPLICATE_NAME,
    "platforms_user_api_key_active_unique": ConflictKind.DUPLICATE_API_KEY,
    "platforms_user_api_secret_active_unique": ConflictKind.DUPLICATE_API_SECRET,
    "sub_accounts_platform_name_active_unique": ConflictKind.DUPLICATE_SUBACCOUNT_NAME,
    "uq_users_username": ConflictKind.DUPLICATE_USERNAME,
    "uq_users_email": ConflictKind.DUPLICATE_EMAIL,
    "uq_oauth_identities_provider_user": ConflictKind.DUPLICATE_IDENTITY,
    "user_api_keys_hash_active_unique": ConflictKind.DUPLICATE_API_KEY,
    "uq_event_processing_event_id": ConflictKind.DUPLICATE_EVENT,
}

CONFLICT_MESSAGES: Dict[ConflictKind, str] = {
    ConflictKind.DUPLICATE_NAME: "trading platform name already exists",
    ConflictKind.DUPLICATE_API_KEY: "API key already in use",
    ConflictKind.DUPLICATE_API_SECRET: "API secret already in use",
    ConflictKind.DUPLICATE_SUBACCOUNT_NAME: "sub-account name already exists for this trading platform",
    ConflictKind.DUPLICATE_USERNAME: "username already taken",
    ConflictKind.DUPLICATE_EMAIL: "email already registered",
    ConflictKind.DUPLICATE_IDENTITY: "identity already linked",
    ConflictKind.DUPLICATE_EVENT: "event already recorded",
}


class TradeLedgerError(Exception):
    """Base exception for all domain errors."""

    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Structured error descriptor for callers."""
        data: Dict[str, Any] = {"error": self.kind.value, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(TradeLedgerError):
    """Malformed or missing field in a payload."""

    kind = ErrorKind.VALIDATION

    def __init__(self, field: str, message: str, error_type: str = "invalid"):
        super().__init__(
            f"validation error for {field}: {message}",
            details={"field": field, "message": message, "type": error_type},
        )
        self.field = field
        self.field_message = message
        self.error_type = error_type


class NotFoundError(TradeLedgerError):
    """Entity absent, or present but owned by someone else."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", details={"resource": resource})
        self.resource = resource


class ConflictError(TradeLedgerError):
    """Unique-constraint collision."""

    kind = ErrorKind.CONFLICT

    def __init__(self, conflict_kind: ConflictKind, message: Optional[str] = None):
        super().__init__(
            message or CONFLICT_MESSAGES[conflict_kind],
            details={"conflict": conflict_kind.value},
        )
        self.conflict_kind = conflict_kind


class InsufficientBalanceError(TradeLedgerError):
    """Overdraw precondition failed."""

    kind = ErrorKind.INSUFFICIENT_BALANCE

    def __init__(self, required: Decimal, available: Decimal, account: str = "account"):
        super().__init__(
            f"insufficient balance in {account}: required {required:.8f}, available {available:.8f}",
            details={"required": str(required), "available": str(available), "account": account},
        )
        self.required = required
        self.available = available


class SymbolMismatchError(TradeLedgerError):
    """Payload currency differs from the target account symbol."""

    kind = ErrorKind.SYMBOL_MISMATCH

    def __init__(self, expected: str, provided: str):
        super().__init__(
            f"currency mismatch: account symbol is {expected}, payload currency is {provided}",
            details={"expected": expected, "provided": provided},
        )
        self.expected = expected
        self.provided = provided


class IntegrityViolationError(TradeLedgerError):
    """Delete or update blocked by a dependent relation."""

    kind = ErrorKind.INTEGRITY_VIOLATION

    def __init__(self, message: str, relation: Optional[str] = None):
        super().__init__(message, details={"relation": relation} if relation else None)
        self.relation = relation


class AuthError(TradeLedgerError):
    """Invalid state, token, or API key."""

    kind = ErrorKind.AUTH_INVALID


class CryptoError(TradeLedgerError):
    """Decryption or tamper-detection failure."""

    kind = ErrorKind.CRYPTOGRAPHIC

    def __init__(self, message: str = "cryptographic operation failed"):
        super().__init__(message)


class TransientError(TradeLedgerError):
    """Store unavailable, deadlock, or timeout; safe to retry."""

    kind = ErrorKind.TRANSIENT
    retryable = True


__all__ = [
    "ErrorKind",
    "ConflictKind",
    "CONSTRAINT_CONFLICTS",
    "TradeLedgerError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InsufficientBalanceError",
    "SymbolMismatchError",
    "IntegrityViolationError",
    "AuthError",
    "CryptoError",
    "TransientError",
]
