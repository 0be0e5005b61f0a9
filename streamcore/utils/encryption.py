"""Fernet symmetric encryption for stored social account tokens.

Social account OAuth access tokens (and the JSON blob of a custom RTMP
destination) are stored encrypted in `social_accounts.access_token_encrypted`.
The Credential Resolver decrypts them right before calling a platform API.

The FERNET_KEY environment variable must be set with a valid Fernet key
generated via `Fernet.generate_key()`.

Usage:
    from streamcore.utils.encryption import get_encryption_service

    service = get_encryption_service()
    encrypted = service.encrypt("my-secret-token")
    decrypted = service.decrypt(encrypted)

Security Notes:
    - NEVER log or expose encrypted values or plaintext tokens
    - Key rotation requires re-encrypting all stored credentials
"""

import os
from typing import ClassVar

from cryptography.fernet import Fernet, InvalidToken


class EncryptionKeyMissing(Exception):
    """Raised when FERNET_KEY is not set or is not a valid Fernet key."""

    pass


class DecryptionError(Exception):
    """Raised when decryption fails due to invalid key or corrupted data.

    Attributes:
        account_id: The social account whose token failed to decrypt
            (if available). Useful for debugging without exposing secrets.
    """

    def __init__(self, message: str, account_id: str | None = None) -> None:
        self.account_id = account_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.account_id:
            return f"{super().__str__()} (account_id={self.account_id})"
        return super().__str__()


class EncryptionService:
    """Fernet symmetric encryption service for credential storage.

    Singleton with lazy initialization so the key is loaded only once per
    process.

    Raises:
        EncryptionKeyMissing: If FERNET_KEY environment variable is not set.
    """

    _instance: ClassVar["EncryptionService | None"] = None
    _cipher: Fernet

    def __new__(cls) -> "EncryptionService":
        if cls._instance is None:
            instance = super().__new__(cls)
            instance._initialize()
            cls._instance = instance
        return cls._instance

    def _initialize(self) -> None:
        key = os.environ.get("FERNET_KEY")
        if not key:
            raise EncryptionKeyMissing("FERNET_KEY environment variable is required")
        try:
            self._cipher = Fernet(key.encode())
        except ValueError as e:
            raise EncryptionKeyMissing(
                "Invalid FERNET_KEY format: Fernet key must be 32 url-safe base64-encoded bytes"
            ) from e

    def encrypt(self, plaintext: str) -> bytes:
        """Encrypt plaintext string to bytes suitable for database storage."""
        return self._cipher.encrypt(plaintext.encode())

    def decrypt(self, ciphertext: bytes, account_id: str | None = None) -> str:
        """Decrypt ciphertext bytes to plaintext string.

        Args:
            ciphertext: The encrypted bytes from database storage.
            account_id: Optional social account ID for error context.

        Raises:
            DecryptionError: If decryption fails (invalid key or corrupted data).
        """
        try:
            return self._cipher.decrypt(ciphertext).decode()
        except InvalidToken as e:
            raise DecryptionError(
                "Decryption failed: invalid encryption key or corrupted data",
                account_id=account_id,
            ) from e
        except (TypeError, ValueError) as e:
            raise DecryptionError(
                f"Decryption failed: {type(e).__name__}",
                account_id=account_id,
            ) from e

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (for testing only)."""
        cls._instance = None


def get_encryption_service() -> EncryptionService:
    """Get the singleton EncryptionService instance.

    Raises:
        EncryptionKeyMissing: If FERNET_KEY environment variable is not set.
    """
    return EncryptionService()
