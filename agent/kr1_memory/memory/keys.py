"""
Key Manager for the KR1 encrypted store.

Obtains the store key from a secret store, creating and persisting one on
first run. Never raises: when the secret store is unusable the manager hands
out an in-memory session key and flags degraded mode.
"""

import asyncio
import os
from pathlib import Path
from typing import Final, Protocol

import structlog

from kr1_memory.memory.encryption import KEY_LENGTH, EncryptionService

logger = structlog.get_logger(__name__)

HEX_KEY_LENGTH: Final[int] = KEY_LENGTH * 2


class SecretNotFoundError(Exception):
    """Raised by a secret store when no value exists under a name."""

    pass


class SecretStore(Protocol):
    """Host secure-credential primitive."""

    async def get_secret(self, name: str) -> str:
        """Return the stored value or raise SecretNotFoundError."""
        ...

    async def set_secret(self, name: str, value: str) -> None:
        """Persist a value under a name."""
        ...


class InMemorySecretStore:
    """Process-local secret store (tests, ephemeral sessions)."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._secrets: dict[str, str] = dict(initial or {})

    async def get_secret(self, name: str) -> str:
        try:
            return self._secrets[name]
        except KeyError:
            raise SecretNotFoundError(name) from None

    async def set_secret(self, name: str, value: str) -> None:
        self._secrets[name] = value


class FileSecretStore:
    """
    Secret store backed by owner-only files under the app-data directory.

    One file per secret name, created with 0600 permissions.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = directory

    def _path(self, name: str) -> Path:
        return self._directory / f"{name}.secret"

    def _read(self, name: str) -> str:
        path = self._path(name)
        if not path.exists():
            raise SecretNotFoundError(name)
        return path.read_text(encoding="utf-8").strip()

    def _write(self, name: str, value: str) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._path(name)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(value)

    async def get_secret(self, name: str) -> str:
        return await asyncio.to_thread(self._read, name)

    async def set_secret(self, name: str, value: str) -> None:
        await asyncio.to_thread(self._write, name, value)


def _parse_hex_key(value: str) -> bytes:
    """Decode a stored hex key, rejecting anything that is not 64 hex chars."""
    if len(value) != HEX_KEY_LENGTH:
        raise ValueError(
            f"Invalid key length. Expected {HEX_KEY_LENGTH} characters, got {len(value)}"
        )
    return bytes.fromhex(value)


class KeyManager:
    """
    Owns the store key for the process lifetime.

    The first successful call fixes the key; later calls return the same one.
    """

    def __init__(self, secret_store: SecretStore, secret_name: str) -> None:
        self._secret_store = secret_store
        self._secret_name = secret_name
        self._key: bytes | None = None
        self._ephemeral = False
        self._lock = asyncio.Lock()

    @property
    def is_ephemeral(self) -> bool:
        """True when the key lives only in memory (secret store unusable)."""
        return self._ephemeral

    async def get_or_create_key(self) -> bytes:
        """
        Fetch the persisted key, creating one on first run.

        Returns:
            32-byte key; an unpersisted session key if the secret store fails
        """
        async with self._lock:
            if self._key is not None:
                return self._key

            try:
                try:
                    stored = await self._secret_store.get_secret(self._secret_name)
                except SecretNotFoundError:
                    key = EncryptionService.generate_master_key()
                    await self._secret_store.set_secret(self._secret_name, key.hex())
                    logger.info("Created new encryption key", secret_name=self._secret_name)
                else:
                    key = _parse_hex_key(stored)
                    logger.debug("Loaded encryption key", secret_name=self._secret_name)
                self._ephemeral = False
            except Exception as e:
                # Previously encrypted data becomes unreadable with this key
                logger.warning(
                    "Secure storage unavailable - using session encryption key, "
                    "data will not persist between restarts",
                    error=str(e),
                )
                key = EncryptionService.generate_master_key()
                self._ephemeral = True

            self._key = key
            return key
