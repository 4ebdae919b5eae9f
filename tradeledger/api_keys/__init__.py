"""
TradeLedger API Keys Package
"""

from .manager import APIKeyManager, APIKeyValidationResult

__all__ = [
    "APIKeyManager",
    "APIKeyValidationResult",
]
