"""
Token vault for secure storage of OAuth tokens.

Uses Fernet symmetric encryption (AES-128-CBC with HMAC).
Tokens are encrypted before database storage and decrypted on retrieval.

Usage:
    from oauth_core.core.encryption import get_vault

    vault = get_vault()
    encrypted = vault.encrypt("my-oauth-token")
    decrypted = vault.decrypt(encrypted)
"""

import binascii
from functools import lru_cache

from cryptography.fernet import Fernet

from oauth_core.core.config import settings
from oauth_core.core.exceptions import ConfigurationError


class TokenVault:
    """
    Encrypt and decrypt OAuth tokens for secure database storage.

    Uses Fernet symmetric encryption which provides:
    - AES-128-CBC encryption
    - HMAC-SHA256 authentication
    - Automatic IV generation

    A single process-wide key is used. Rotating it requires re-encrypting
    every stored token and is not handled here.
    """

    def __init__(self, key: str | bytes | None = None):
        """
        Initialize the vault with a Fernet key.

        Args:
            key: Base64-encoded 32-byte key. If not provided,
                 reads from TOKEN_ENCRYPTION_KEY setting.

        Raises:
            ConfigurationError: If no key is configured or the key is malformed.
        """
        if key is None:
            key = settings.TOKEN_ENCRYPTION_KEY

        if not key:
            raise ConfigurationError(
                "TOKEN_ENCRYPTION_KEY environment variable is required. "
                "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )

        try:
            self.fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, binascii.Error) as e:
            raise ConfigurationError(
                "TOKEN_ENCRYPTION_KEY is not a valid Fernet key (32 url-safe base64-encoded bytes)"
            ) from e

    def encrypt(self, plaintext: str) -> bytes:
        """
        Encrypt a token string.

        Args:
            plaintext: The token to encrypt.

        Returns:
            Encrypted bytes suitable for database storage.
        """
        return self.fernet.encrypt(plaintext.encode())

    def decrypt(self, ciphertext: bytes) -> str:
        """
        Decrypt an encrypted token.

        Args:
            ciphertext: The encrypted bytes from database.

        Returns:
            Original token string.

        Raises:
            cryptography.fernet.InvalidToken: If data is corrupted, tampered,
                or was encrypted with a different key.
        """
        return self.fernet.decrypt(ciphertext).decode()


@lru_cache(maxsize=1)
def get_vault() -> TokenVault:
    """
    Get the process-wide TokenVault instance.

    The instance is cached for the lifetime of the application.

    Returns:
        TokenVault configured from environment.

    Raises:
        ConfigurationError: If TOKEN_ENCRYPTION_KEY is missing or invalid.
    """
    return TokenVault()
