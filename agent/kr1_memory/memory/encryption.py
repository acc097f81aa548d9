"""
Encryption Service for the KR1 memory store.

AES-based encryption at rest (Fernet) for everything the store persists.

Security Rules:
- 256-bit key obtained from the key manager
- Encryption/decryption happens at the repository boundary
- Decrypted content exists only in memory
- Never log plaintext memory
"""

import base64
import hashlib
import secrets
from typing import Final

import structlog
from cryptography.fernet import Fernet, InvalidToken

logger = structlog.get_logger(__name__)

# Constants
KEY_LENGTH: Final[int] = 32  # 256-bit


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""

    pass


class EncryptionService:
    """
    Symmetric encryption service for memory at rest.

    Encryption/decryption happens at the repository boundary.
    Decrypted content exists only in memory, never on disk.
    """

    def __init__(self, master_key: bytes) -> None:
        """
        Initialize encryption service.

        Args:
            master_key: 32-byte key from the key manager

        Raises:
            ValueError: If the key has the wrong length
        """
        if len(master_key) != KEY_LENGTH:
            raise ValueError(f"Master key must be {KEY_LENGTH} bytes")

        # Fernet wants the raw key base64-encoded
        fernet_key = base64.urlsafe_b64encode(master_key)
        self._fernet = Fernet(fernet_key)
        logger.debug("Encryption service initialized")

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt plaintext string.

        Args:
            plaintext: String to encrypt

        Returns:
            Fernet token as ASCII string

        Raises:
            EncryptionError: If encryption fails
        """
        try:
            return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")
        except Exception as e:
            logger.error("Encryption failed", error=str(e))
            raise EncryptionError(f"Failed to encrypt data: {e}") from e

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt ciphertext string.

        Args:
            ciphertext: Fernet token produced by encrypt()

        Returns:
            Decrypted plaintext string

        Raises:
            EncryptionError: If the token is malformed or was made with another key
        """
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise EncryptionError("Ciphertext does not match the current key") from e
        except Exception as e:
            logger.error("Decryption failed", error=str(e))
            raise EncryptionError(f"Failed to decrypt data: {e}") from e

    def hash_for_index(self, value: str) -> str:
        """
        Create deterministic hash for indexing encrypted fields.

        Lets unique constraints and lookups work on columns whose
        ciphertext differs on every write.

        Args:
            value: Value to hash

        Returns:
            Hex-encoded SHA-256 hash
        """
        return hashlib.sha256(value.encode("utf-8")).hexdigest()

    @staticmethod
    def generate_master_key() -> bytes:
        """Generate a new random master key."""
        return secrets.token_bytes(KEY_LENGTH)
