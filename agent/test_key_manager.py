"""
Test key lifecycle.

This test verifies:
1. First run creates and persists a 32-byte key
2. Later runs load the same key
3. Secret store failures degrade to an ephemeral key instead of raising
"""

import os
import stat
from unittest.mock import AsyncMock, MagicMock

import pytest

from kr1_memory.memory import (
    EncryptionService,
    FileSecretStore,
    InMemorySecretStore,
    KeyManager,
    SecretNotFoundError,
)


@pytest.mark.asyncio
async def test_creates_and_persists_key():
    """Test that a missing secret is generated and written as hex."""
    secrets = InMemorySecretStore()
    manager = KeyManager(secrets, "key")

    key = await manager.get_or_create_key()

    assert len(key) == 32
    assert manager.is_ephemeral is False
    stored = await secrets.get_secret("key")
    assert stored == key.hex()
    assert len(stored) == 64


@pytest.mark.asyncio
async def test_loads_existing_key():
    """Test that a second manager over the same storage gets the same key."""
    secrets = InMemorySecretStore()
    first = await KeyManager(secrets, "key").get_or_create_key()
    second = await KeyManager(secrets, "key").get_or_create_key()

    assert first == second


@pytest.mark.asyncio
async def test_key_is_fixed_for_process_lifetime():
    """Test that repeated calls return the cached key without re-reading."""
    secrets = MagicMock()
    secrets.get_secret = AsyncMock(return_value="ab" * 32)
    secrets.set_secret = AsyncMock()
    manager = KeyManager(secrets, "key")

    assert await manager.get_or_create_key() == await manager.get_or_create_key()
    secrets.get_secret.assert_awaited_once()


@pytest.mark.asyncio
async def test_storage_failure_gives_ephemeral_key():
    """Test that an unusable secret store never raises."""
    secrets = MagicMock()
    secrets.get_secret = AsyncMock(side_effect=OSError("keychain locked"))
    secrets.set_secret = AsyncMock()
    manager = KeyManager(secrets, "key")

    key = await manager.get_or_create_key()

    assert len(key) == 32
    assert manager.is_ephemeral is True
    secrets.set_secret.assert_not_called()


@pytest.mark.asyncio
async def test_write_failure_gives_ephemeral_key():
    """Test that failing to persist a new key degrades instead of raising."""
    secrets = MagicMock()
    secrets.get_secret = AsyncMock(side_effect=SecretNotFoundError("key"))
    secrets.set_secret = AsyncMock(side_effect=PermissionError("read-only"))
    manager = KeyManager(secrets, "key")

    key = await manager.get_or_create_key()

    assert len(key) == 32
    assert manager.is_ephemeral is True


@pytest.mark.asyncio
async def test_malformed_stored_key_gives_ephemeral_key():
    """Test that a stored value that is not 64 hex chars is not used."""
    manager = KeyManager(InMemorySecretStore({"key": "not-a-key"}), "key")

    key = await manager.get_or_create_key()

    assert len(key) == 32
    assert manager.is_ephemeral is True


@pytest.mark.asyncio
async def test_file_secret_store_roundtrip(tmp_path):
    """Test the file-backed store and its owner-only permissions."""
    secrets = FileSecretStore(tmp_path / "secrets")

    with pytest.raises(SecretNotFoundError):
        await secrets.get_secret("key")

    await secrets.set_secret("key", "00" * 32)
    assert await secrets.get_secret("key") == "00" * 32

    if os.name == "posix":
        mode = stat.S_IMODE((tmp_path / "secrets" / "key.secret").stat().st_mode)
        assert mode == 0o600


def test_encryption_service_rejects_short_key():
    """Test that only 32-byte keys are accepted."""
    with pytest.raises(ValueError):
        EncryptionService(b"short")


def test_encryption_roundtrip_and_index_hash():
    """Test that ciphertext differs from plaintext and hashes are stable."""
    service = EncryptionService(EncryptionService.generate_master_key())

    token = service.encrypt("hello")
    assert token != "hello"
    assert service.decrypt(token) == "hello"
    assert service.hash_for_index("/tmp/a") == service.hash_for_index("/tmp/a")
    assert service.hash_for_index("/tmp/a") != service.hash_for_index("/tmp/b")
