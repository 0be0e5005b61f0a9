"""Cross-cutting utilities for the orchestration services.

Utilities are pure functions or singletons without business logic.

Modules:
    encryption: Fernet symmetric encryption for stored account tokens.
    ffmpeg: ffmpeg argv construction and log sanitization.
    logging: structlog configuration.
"""

from streamcore.utils.encryption import (
    DecryptionError,
    EncryptionKeyMissing,
    EncryptionService,
    get_encryption_service,
)

__all__ = [
    "DecryptionError",
    "EncryptionKeyMissing",
    "EncryptionService",
    "get_encryption_service",
]
