"""
TradeLedger Security Package
"""

from .crypto import CryptoEnvelope, get_crypto_envelope, mask

__all__ = [
    "CryptoEnvelope",
    "get_crypto_envelope",
    "mask",
]
