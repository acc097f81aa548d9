"""
Test memory manager wiring, reset and health.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from kr1_memory.config import Settings
from kr1_memory.errors import NotInitializedError
from kr1_memory.memory import InMemorySecretStore, create_memory_manager
from kr1_memory.models import MemoryResetRequest


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path,
        openai_api_key=None,
        vector_size=32,
        response_cache_size=10,
    )


@pytest.fixture
def unreachable_qdrant():
    backend = MagicMock()
    backend.name = "qdrant"
    backend.list_collections = AsyncMock(side_effect=ConnectionError("connection refused"))
    backend.close = AsyncMock()
    return backend


@pytest_asyncio.fixture
async def manager(settings, unreachable_qdrant, clock):
    memory_manager = await create_memory_manager(
        settings,
        secret_store=InMemorySecretStore(),
        model=AsyncMock(return_value="ok"),
        vector_backend=unreachable_qdrant,
        clock=clock,
    )
    await memory_manager.initialize()
    yield memory_manager
    await memory_manager.close()


@pytest.mark.asyncio
async def test_manager_initializes_with_fallback(manager, settings):
    health = await manager.health_check()

    assert health == {
        "store": True,
        "vectors": True,
        "vector_backend": "in_memory",
        "ephemeral_key": False,
    }
    assert settings.database_path.exists()


@pytest.mark.asyncio
async def test_process_turn_through_manager(manager):
    result = await manager.process_turn("s1", "hello")

    assert result.response == "ok"
    assert (await manager.get_stats()).total_conversations == 2


@pytest.mark.asyncio
async def test_process_turn_without_model(settings, unreachable_qdrant, clock):
    memory_manager = await create_memory_manager(
        settings,
        secret_store=InMemorySecretStore(),
        vector_backend=unreachable_qdrant,
        clock=clock,
    )
    await memory_manager.initialize()
    try:
        with pytest.raises(NotInitializedError):
            await memory_manager.process_turn("s1", "hello")
    finally:
        await memory_manager.close()


@pytest.mark.asyncio
async def test_full_reset_requires_confirmation(manager):
    await manager.store.store_conversation("s1", "user", "keep")

    response = await manager.full_reset(MemoryResetRequest(confirm_full_reset=False))

    assert response.success is False
    assert response.error == "Reset not confirmed"
    assert (await manager.get_stats()).total_conversations == 1


@pytest.mark.asyncio
async def test_full_reset_clears_everything(manager):
    await manager.process_turn("s1", "hello")
    await manager.vectors.add_document("remember this")
    await manager.store.generate_downloadable_file({"a": 1}, "out.json", None, "json")

    response = await manager.full_reset(MemoryResetRequest(confirm_full_reset=True))

    assert response.success is True
    assert response.store_cleared and response.vectors_cleared and response.cache_cleared
    stats = await manager.get_stats()
    assert stats.total_conversations == 0
    assert stats.active_generated_files == 0
    assert (await manager.vectors.get_collection_info()).points_count == 0
    assert len(manager.cache) == 0


@pytest.mark.asyncio
async def test_pipeline_serves_from_manager_cache(manager, settings):
    """Test that settings reach the cache the pipeline answers from."""
    first = await manager.process_turn("s1", "hello")
    second = await manager.process_turn("s1", "hello")

    assert first.from_cache is False
    assert second.from_cache is True
    assert len(manager.cache) == 1
    assert manager.cache.max_entries == settings.response_cache_size


@pytest.mark.asyncio
async def test_full_reset_stops_cached_responses(manager):
    await manager.process_turn("s1", "hello")

    await manager.full_reset(MemoryResetRequest(confirm_full_reset=True))
    result = await manager.process_turn("s1", "hello")

    assert result.from_cache is False


@pytest.mark.asyncio
async def test_full_reset_reports_partial_failure(manager):
    manager.vectors.clear_collection = AsyncMock(side_effect=RuntimeError("backend gone"))

    response = await manager.full_reset(MemoryResetRequest(confirm_full_reset=True))

    assert response.success is False
    assert response.store_cleared is True
    assert response.vectors_cleared is False
    assert response.cache_cleared is True
    assert "Vectors: backend gone" in response.error


@pytest.mark.asyncio
async def test_default_secret_store_persists_key(settings, unreachable_qdrant, clock):
    """Test that the file secret store in the data dir is used by default."""
    memory_manager = await create_memory_manager(
        settings,
        vector_backend=unreachable_qdrant,
        clock=clock,
    )

    assert (settings.data_dir / f"{settings.secret_name}.secret").exists()
    assert memory_manager.key_manager.is_ephemeral is False


def test_context_threshold_default(tmp_path, monkeypatch):
    monkeypatch.delenv("KR1_CONTEXT_SCORE_THRESHOLD", raising=False)

    assert Settings(data_dir=tmp_path).context_score_threshold == 0.6
