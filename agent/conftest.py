"""Shared fixtures for the KR1 memory runtime tests."""

import pytest
import pytest_asyncio

from kr1_memory.memory import (
    EncryptedMemoryStore,
    InMemorySecretStore,
    KeyManager,
    VectorMemoryService,
)

START_MS = 1_700_000_000_000


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, now_ms: int = START_MS) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def secret_store():
    return InMemorySecretStore()


@pytest.fixture
def key_manager(secret_store):
    return KeyManager(secret_store, "kr1-test-key")


@pytest_asyncio.fixture
async def store(tmp_path, key_manager, clock):
    """Initialized store in a temp directory."""
    memory_store = EncryptedMemoryStore(
        database_path=tmp_path / "memory.db",
        downloads_dir=tmp_path / "downloads",
        key_manager=key_manager,
        clock=clock,
    )
    await memory_store.initialize()
    yield memory_store
    await memory_store.close()


@pytest_asyncio.fixture
async def vector_memory():
    """Vector memory on the in-process backend with fallback embeddings."""
    service = VectorMemoryService(primary=None, vector_size=64)
    await service.initialize()
    yield service
    await service.close()
