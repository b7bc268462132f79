"""Encryption of integration secrets and tokens at rest."""

from typing import Optional

from cryptography.fernet import Fernet


class TokenEncryption:
    """Thread-safe token encryption using Fernet."""

    def __init__(self, encryption_key: str):
        self.fernet = Fernet(encryption_key.encode())

    def encrypt(self, token: str) -> str:
        """Encrypt a token."""
        return self.fernet.encrypt(token.encode()).decode()

    def decrypt(self, encrypted_token: str) -> str:
        """Decrypt an encrypted token."""
        return self.fernet.decrypt(encrypted_token.encode()).decode()


def mask_secret(value: Optional[str], visible: int = 4) -> Optional[str]:
    """Mask all but the last few characters of a secret for display."""
    if not value:
        return value
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


# Global token encryption instance
_token_encryption: Optional[TokenEncryption] = None


def init_token_encryption(encryption_key: str) -> None:
    """Initialize the global token encryption instance."""
    global _token_encryption
    _token_encryption = TokenEncryption(encryption_key)


def encrypt_token(token: str) -> str:
    """Encrypt a token using the global encryption instance."""
    if _token_encryption is None:
        raise RuntimeError("Token encryption not initialized")
    return _token_encryption.encrypt(token)


def decrypt_token(encrypted_token: str) -> str:
    """Decrypt an encrypted token using the global encryption instance."""
    if _token_encryption is None:
        raise RuntimeError("Token encryption not initialized")
    return _token_encryption.decrypt(encrypted_token)
