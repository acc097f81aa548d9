"""
Test the memory API routes with a mocked memory manager.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from kr1_memory.api import set_memory_manager
from kr1_memory.errors import TransientIOError, ValidationError
from kr1_memory.main import app
from kr1_memory.models import (
    ConversationEntry,
    ConversationRole,
    DownloadableFile,
    FileProcessingStatus,
    MemoryResetResponse,
    MemoryStats,
)


@pytest.fixture
def manager():
    fake = MagicMock()
    fake.store = MagicMock()
    fake.vectors = MagicMock()
    fake.get_stats = AsyncMock(return_value=MemoryStats(total_conversations=3))
    fake.full_reset = AsyncMock()
    fake.health_check = AsyncMock(
        return_value={"store": True, "vectors": True, "vector_backend": "in_memory", "ephemeral_key": False}
    )
    return fake


@pytest.fixture
def client(manager):
    set_memory_manager(manager)
    yield TestClient(app)
    set_memory_manager(None)


def test_health_endpoint():
    response = TestClient(app).get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_memory_routes_unavailable_without_manager():
    set_memory_manager(None)

    response = TestClient(app).get("/api/v1/memory/stats")

    assert response.status_code == 503


def test_stats(client):
    response = client.get("/api/v1/memory/stats")

    assert response.status_code == 200
    assert response.json()["total_conversations"] == 3


def test_conversation_history(client, manager):
    manager.store.load_conversation_history = AsyncMock(
        return_value=[
            ConversationEntry(id="e1", session_id="s1", role=ConversationRole.USER, content="hi", timestamp_ms=1)
        ]
    )

    response = client.get("/api/v1/memory/conversations/s1", params={"limit": 5})

    assert response.status_code == 200
    body = response.json()
    assert body["session_id"] == "s1"
    assert [m["content"] for m in body["messages"]] == ["hi"]
    manager.store.load_conversation_history.assert_awaited_once_with("s1", 5)


def test_store_conversation(client, manager):
    manager.store.store_conversation = AsyncMock(return_value="new-id")

    response = client.post(
        "/api/v1/memory/conversations",
        json={"session_id": "s1", "role": "user", "content": "hello"},
    )

    assert response.status_code == 200
    assert response.json() == {"id": "new-id"}


def test_search(client, manager):
    manager.store.search_memory = AsyncMock(return_value=[])

    response = client.get("/api/v1/memory/search", params={"q": "needle"})

    assert response.status_code == 200
    assert response.json() == {"query": "needle", "results": []}
    manager.store.search_memory.assert_awaited_once_with("needle", 100)


def test_generate_file(client, manager):
    manager.store.generate_downloadable_file = AsyncMock(
        return_value=DownloadableFile(
            id="f1", file_path="/tmp/1_out.json", filename="1_out.json", expires_at_ms=10, is_duplicate=True
        )
    )

    response = client.post(
        "/api/v1/memory/files",
        json={"data": {"a": 1}, "filename": "out.json", "query_hash": "hashX", "file_type": "json"},
    )

    assert response.status_code == 200
    assert response.json()["is_duplicate"] is True


def test_validation_error_maps_to_400(client, manager):
    manager.store.add_folder_path = AsyncMock(side_effect=ValidationError("Folder path must not be empty"))

    response = client.post("/api/v1/memory/folders", json={"absolute_path": "/x"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Folder path must not be empty"


def test_transient_error_maps_to_503(client, manager):
    manager.store.store_conversation = AsyncMock(side_effect=TransientIOError("disk full"))

    response = client.post(
        "/api/v1/memory/conversations",
        json={"session_id": "s1", "role": "user", "content": "hello"},
    )

    assert response.status_code == 503


def test_delete_missing_folder_is_404(client, manager):
    manager.store.delete_folder_path = AsyncMock(return_value=False)

    response = client.delete("/api/v1/memory/folders", params={"path": "/nope"})

    assert response.status_code == 404


def test_upload_documents(client, manager):
    manager.vectors.process_uploaded_files = AsyncMock(
        return_value=[
            FileProcessingStatus(filename="a.txt", status="processed", id="d1"),
            FileProcessingStatus(filename="b.json", status="error", error="bad json"),
        ]
    )

    response = client.post(
        "/api/v1/memory/documents/upload",
        json=[{"name": "a.txt", "content": "x"}, {"name": "b.json", "content": "{"}],
    )

    assert response.status_code == 200
    assert [s["status"] for s in response.json()] == ["processed", "error"]


def test_context(client, manager):
    manager.vectors.retrieve_context = AsyncMock(return_value="[Context 1] a")

    response = client.post("/api/v1/memory/documents/context", json={"query": "a", "limit": 2})

    assert response.json() == {"context": "[Context 1] a"}
    manager.vectors.retrieve_context.assert_awaited_once_with("a", 2)


def test_reset_requires_confirmation(client, manager):
    response = client.post("/api/v1/memory/reset", json={"confirm_full_reset": False})

    assert response.status_code == 400
    manager.full_reset.assert_not_called()


def test_reset(client, manager):
    manager.full_reset.return_value = MemoryResetResponse(
        success=True, store_cleared=True, vectors_cleared=True, cache_cleared=True
    )

    response = client.post("/api/v1/memory/reset", json={"confirm_full_reset": True})

    assert response.status_code == 200
    assert response.json()["success"] is True


def test_memory_health(client):
    response = client.get("/api/v1/memory/health")

    assert response.status_code == 200
    assert response.json()["vector_backend"] == "in_memory"
