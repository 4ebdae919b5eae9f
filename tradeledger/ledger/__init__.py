"""
TradeLedger Ledger Package
Ownership resolution and the balance ledger.
"""

from .balance import BalanceLedger
from .ownership import OwnershipResolver, OwnershipScope

__all__ = [
    "BalanceLedger",
    "OwnershipResolver",
    "OwnershipScope",
]
