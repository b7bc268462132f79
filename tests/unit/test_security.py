"""Unit tests for security module."""

import pytest
from cryptography.fernet import Fernet, InvalidToken

from app.core.security import TokenEncryption, mask_secret, encrypt_token, decrypt_token


class TestTokenEncryption:
    """Test token encryption/decryption."""

    def test_encryption_decryption(self):
        """Test that encryption and decryption work correctly."""
        key = Fernet.generate_key().decode()

        encryptor = TokenEncryption(key)
        original_token = "test_token_12345"

        encrypted = encryptor.encrypt(original_token)
        assert encrypted != original_token
        assert isinstance(encrypted, str)

        decrypted = encryptor.decrypt(encrypted)
        assert decrypted == original_token

    def test_encryption_with_different_tokens(self):
        """Test that different tokens produce different encrypted values."""
        key = Fernet.generate_key().decode()

        encryptor = TokenEncryption(key)

        encrypted1 = encryptor.encrypt("token_1")
        encrypted2 = encryptor.encrypt("token_2")

        assert encrypted1 != encrypted2
        assert encryptor.decrypt(encrypted1) == "token_1"
        assert encryptor.decrypt(encrypted2) == "token_2"

    def test_wrong_key_cannot_decrypt(self):
        encrypted = TokenEncryption(Fernet.generate_key().decode()).encrypt("secret")

        with pytest.raises(InvalidToken):
            TokenEncryption(Fernet.generate_key().decode()).decrypt(encrypted)

    def test_global_helpers_round_trip(self):
        """The global instance is initialized by the test session."""
        assert decrypt_token(encrypt_token("refresh-0")) == "refresh-0"


class TestMaskSecret:
    """Test secret masking for display."""

    @pytest.mark.parametrize("value,expected", [
        ("abcdefgh", "****efgh"),
        ("abcd", "****"),
        ("ab", "**"),
        ("", ""),
        (None, None),
    ])
    def test_mask(self, value, expected):
        assert mask_secret(value) == expected

    def test_custom_visible_count(self):
        assert mask_secret("abcdefgh", visible=2) == "******gh"
