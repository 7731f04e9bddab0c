"""
Cryptographic capability for access codes and the audit trail.

CRITICAL SECURITY REQUIREMENTS:
1. NEVER store or log a raw access code
2. ALWAYS compare secrets in constant time
3. Hash secrets with a salted, slow key-derivation function (PBKDF2-HMAC-SHA256)
4. Sign secrets with a keyed HMAC so lookups never need the raw value

Everything here is backed by the `cryptography` package.
"""

import logging
import secrets
from typing import Optional

from cryptography.exceptions import InvalidKey, InvalidSignature
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import constant_time, hashes
from cryptography.hazmat.primitives import hmac as crypto_hmac
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from codeguard.models.access_code import SecretHash

logger = logging.getLogger(__name__)


class SecretHasher:
    """
    Salted PBKDF2-HMAC-SHA256 hashing.

    Usage:
        hasher = SecretHasher(iterations=200_000)
        stored = hasher.hash("Xy7!...")
        assert hasher.verify("Xy7!...", stored)
    """

    def __init__(self, iterations: int = 200_000, salt_bytes: int = 16, key_length: int = 32):
        if iterations < 1:
            raise ValueError("iterations must be >= 1")
        self.iterations = iterations
        self.salt_bytes = salt_bytes
        self.key_length = key_length

    def _kdf(self, salt: bytes, iterations: int) -> PBKDF2HMAC:
        return PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.key_length,
            salt=salt,
            iterations=iterations,
        )

    def hash(self, secret: str) -> SecretHash:
        """
        Derive a salted hash of `secret`.

        Args:
            secret: Raw secret (never persisted)

        Returns:
            SecretHash with hex salt and derived key
        """
        if not secret:
            raise ValueError("Cannot hash empty secret")

        salt = secrets.token_bytes(self.salt_bytes)
        derived = self._kdf(salt, self.iterations).derive(secret.encode())
        return SecretHash(iterations=self.iterations, salt=salt.hex(), hash=derived.hex())

    def verify(self, secret: str, stored: SecretHash) -> bool:
        """Constant-time check of `secret` against a stored hash."""
        if not secret:
            return False
        kdf = self._kdf(bytes.fromhex(stored.salt), stored.iterations)
        try:
            kdf.verify(secret.encode(), bytes.fromhex(stored.hash))
            return True
        except InvalidKey:
            return False


class MessageSigner:
    """HMAC-SHA256 signatures keyed with SECRET_KEY."""

    def __init__(self, key: str):
        if not key:
            raise ValueError("Signing key must not be empty")
        self._key = key.encode()

    def sign(self, message: str) -> str:
        """Hex HMAC of `message`. Deterministic for a given key."""
        h = crypto_hmac.HMAC(self._key, hashes.SHA256())
        h.update(message.encode())
        return h.finalize().hex()

    def verify(self, message: str, signature: str) -> bool:
        h = crypto_hmac.HMAC(self._key, hashes.SHA256())
        h.update(message.encode())
        try:
            h.verify(bytes.fromhex(signature))
            return True
        except (InvalidSignature, ValueError):
            return False


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two strings without leaking where they differ."""
    return constant_time.bytes_eq(a.encode(), b.encode())


class TokenEncryption:
    """
    Symmetric authenticated encryption using Fernet (AES-128-CBC + HMAC).

    Used for audit log lines when encryption at rest is enabled.
    """

    def __init__(self, encryption_key: str):
        """
        Initialize with encryption key.

        Key must be 44-character base64-encoded string.
        Generate with: Fernet.generate_key().decode()
        """
        self._fernet = Fernet(encryption_key.encode())

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt ciphertext string.

        Raises:
            cryptography.fernet.InvalidToken: If the ciphertext was tampered with
        """
        if not ciphertext:
            raise ValueError("Cannot decrypt empty string")
        return self._fernet.decrypt(ciphertext.encode()).decode()


def generate_identifier(prefix: str, nbytes: int = 8) -> str:
    """Random identifier such as CODE_1A2B3C4D5E6F7A8B."""
    return f"{prefix}{secrets.token_hex(nbytes).upper()}"


class CryptoProvider:
    """
    Bundle of the crypto primitives one context uses.

    Usage:
        crypto = CryptoProvider(secret_key="...", encryption_key=Fernet.generate_key().decode())
        stored = crypto.hasher.hash(raw)
        signature = crypto.signer.sign(raw)
    """

    def __init__(
        self,
        secret_key: str,
        encryption_key: Optional[str] = None,
        hash_iterations: int = 200_000
    ):
        self.hasher = SecretHasher(iterations=hash_iterations)
        self.signer = MessageSigner(secret_key)
        self.cipher = TokenEncryption(encryption_key) if encryption_key else None

    @staticmethod
    def generate_secret_key() -> str:
        return secrets.token_urlsafe(32)

    @staticmethod
    def generate_encryption_key() -> str:
        return Fernet.generate_key().decode()
