"""
TradeLedger Services Package
"""

from .platforms import PlatformService
from .sub_accounts import SubAccountService
from .transactions import TransactionService
from .users import UserService

__all__ = [
    "PlatformService",
    "SubAccountService",
    "TransactionService",
    "UserService",
]
