"""
TradeLedger Crypto Envelope
===========================
Authenticated encryption and keyed hashing for sensitive strings.

Ciphertexts are AES-256-GCM with a fresh 96-bit nonce per call, serialised as
``v1.<urlsafe-base64(nonce || ciphertext || tag)>``. Keyed hashes are
HMAC-SHA256 hex digests, stable across processes for equality lookups.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..config.settings import SecuritySettings, settings
from ..errors import CryptoError

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = "v1"
NONCE_SIZE = 12
TAG_SIZE = 16
MASK = "****"

# Fixed salt: the derived key must be identical in every process
_KDF_SALT = b"tradeledger-envelope-v1"
_KDF_ITERATIONS = 100_000
MIN_KEY_LENGTH = 32


def _derive_key(master_key: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_KDF_SALT,
        iterations=_KDF_ITERATIONS,
    )
    return kdf.derive(master_key.encode("utf-8"))


def mask(plaintext: Optional[str], visible_tail: int = 4) -> str:
    """
    Mask all but the trailing ``visible_tail`` characters.

    Returns ``"****"`` for empty input or input too short to keep a tail.
    """
    if not plaintext or visible_tail <= 0 or len(plaintext) <= visible_tail:
        return MASK
    masked = MASK + plaintext[-visible_tail:]
    if masked == plaintext:
        return MASK
    return masked


class CryptoEnvelope:
    """
    Encrypts, decrypts and hashes sensitive strings.

    Both keys are read-only after construction and the object is safe to share
    across concurrent requests.
    """

    def __init__(self, master_key: str, signing_key: str):
        if len(master_key) < MIN_KEY_LENGTH:
            raise CryptoError(f"master key must be at least {MIN_KEY_LENGTH} characters")
        if len(signing_key) < MIN_KEY_LENGTH:
            raise CryptoError(f"signing key must be at least {MIN_KEY_LENGTH} characters")
        self._aead = AESGCM(_derive_key(master_key))
        self._signing_key = signing_key.encode("utf-8")

    @classmethod
    def from_settings(cls, security: Optional[SecuritySettings] = None) -> "CryptoEnvelope":
        security = security or settings.security
        return cls(security.master_key, security.signing_key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt ``plaintext`` with a fresh random nonce."""
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        body = base64.urlsafe_b64encode(nonce + sealed).decode("ascii")
        return f"{ENVELOPE_VERSION}.{body}"

    def decrypt(self, envelope: str) -> str:
        """
        Decrypt an envelope produced by :meth:`encrypt`.

        Raises:
            CryptoError: On malformed input, wrong key, or tampering.
        """
        version, sep, body = (envelope or "").partition(".")
        if not sep or version != ENVELOPE_VERSION:
            raise CryptoError("invalid ciphertext")

        try:
            raw = base64.urlsafe_b64decode(body.encode("ascii"))
        except (binascii.Error, ValueError, UnicodeEncodeError) as e:
            raise CryptoError("invalid ciphertext") from e

        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise CryptoError("invalid ciphertext")

        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as e:
            logger.warning("Envelope authentication failed")
            raise CryptoError("decryption failed") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CryptoError("decryption failed") from e

    def hash(self, plaintext: str) -> str:
        """Deterministic keyed hash (HMAC-SHA256, hex) for equality lookup."""
        return hmac.new(self._signing_key, plaintext.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_hash(self, plaintext: str, expected: str) -> bool:
        """Constant-time comparison of ``hash(plaintext)`` against a stored digest."""
        return hmac.compare_digest(self.hash(plaintext), expected)

    @staticmethod
    def mask(plaintext: Optional[str], visible_tail: int = 4) -> str:
        return mask(plaintext, visible_tail)


# Global envelope instance
_crypto_envelope: Optional[CryptoEnvelope] = None


def get_crypto_envelope() -> CryptoEnvelope:
    """Get or create the process-wide crypto envelope"""
    global _crypto_envelope
    if _crypto_envelope is None:
        _crypto_envelope = CryptoEnvelope.from_settings()
    return _crypto_envelope
