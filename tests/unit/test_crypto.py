"""
Unit tests for the crypto primitives.

Tests:
- PBKDF2 hashing and verification
- HMAC signing
- Constant-time comparison
- Fernet encryption
- Identifier generation

Run tests:
    pytest tests/unit/test_crypto.py -v
"""

import re

import pytest
from cryptography.fernet import Fernet, InvalidToken

from codeguard.core.security import (
    CryptoProvider,
    MessageSigner,
    SecretHasher,
    TokenEncryption,
    constant_time_equals,
    generate_identifier,
)


class TestSecretHasher:
    """Test salted hashing."""

    @pytest.fixture
    def hasher(self):
        return SecretHasher(iterations=1000)

    def test_hash_and_verify(self, hasher):
        """Test the original secret verifies."""
        stored = hasher.hash("Xy7!abcdEFGH1234")

        assert hasher.verify("Xy7!abcdEFGH1234", stored)
        assert stored.iterations == 1000

    def test_wrong_secret(self, hasher):
        """Test a different secret does not verify."""
        stored = hasher.hash("Xy7!abcdEFGH1234")

        assert not hasher.verify("Xy7!abcdEFGH1235", stored)
        assert not hasher.verify("", stored)

    def test_salts_differ(self, hasher):
        """Test the same secret hashes differently each time."""
        first = hasher.hash("same-secret")
        second = hasher.hash("same-secret")

        assert first.salt != second.salt
        assert first.hash != second.hash

    def test_empty_secret_rejected(self, hasher):
        """Test empty secrets cannot be hashed."""
        with pytest.raises(ValueError):
            hasher.hash("")

    def test_invalid_iterations(self):
        """Test iterations must be positive."""
        with pytest.raises(ValueError):
            SecretHasher(iterations=0)


class TestMessageSigner:
    """Test HMAC signatures."""

    def test_deterministic(self):
        """Test signing is deterministic for one key."""
        signer = MessageSigner("key-one")

        assert signer.sign("code") == signer.sign("code")

    def test_key_dependent(self):
        """Test different keys give different signatures."""
        assert MessageSigner("key-one").sign("code") != MessageSigner("key-two").sign("code")

    def test_verify(self):
        """Test verification of valid, tampered and malformed signatures."""
        signer = MessageSigner("key-one")
        signature = signer.sign("code")

        assert signer.verify("code", signature)
        assert not signer.verify("other", signature)
        assert not signer.verify("code", "not-hex")

    def test_empty_key_rejected(self):
        with pytest.raises(ValueError):
            MessageSigner("")


class TestConstantTimeEquals:
    def test_equal_and_unequal(self):
        assert constant_time_equals("abc", "abc")
        assert not constant_time_equals("abc", "abd")
        assert not constant_time_equals("abc", "abcd")


class TestTokenEncryption:
    """Test Fernet encryption."""

    @pytest.fixture
    def cipher(self):
        return TokenEncryption(Fernet.generate_key().decode())

    def test_round_trip(self, cipher):
        """Test ciphertext decrypts to the plaintext and differs from it."""
        ciphertext = cipher.encrypt('{"activity": "CODE_CREATED"}')

        assert "CODE_CREATED" not in ciphertext
        assert cipher.decrypt(ciphertext) == '{"activity": "CODE_CREATED"}'

    def test_wrong_key(self, cipher):
        """Test another key cannot decrypt."""
        ciphertext = cipher.encrypt("secret")
        other = TokenEncryption(Fernet.generate_key().decode())

        with pytest.raises(InvalidToken):
            other.decrypt(ciphertext)

    def test_empty_values(self, cipher):
        with pytest.raises(ValueError):
            cipher.encrypt("")
        with pytest.raises(ValueError):
            cipher.decrypt("")


class TestIdentifiers:
    def test_generate_identifier(self):
        """Test prefix plus 16 uppercase hex characters."""
        identifier = generate_identifier("CODE_")

        assert re.fullmatch(r"CODE_[0-9A-F]{16}", identifier)

    def test_crypto_provider_without_encryption_key(self):
        """Test the cipher is optional."""
        crypto = CryptoProvider(CryptoProvider.generate_secret_key(), hash_iterations=1000)

        assert crypto.cipher is None
        assert crypto.hasher.iterations == 1000
