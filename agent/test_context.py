"""
Test the response cache and context assembler.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from kr1_memory.memory import ContextAssembler, ResponseCache
from kr1_memory.models import ConversationEntry, ConversationRole, UploadedFile


# =============================================================================
# Response Cache
# =============================================================================


def test_cache_hit_and_miss():
    cache = ResponseCache()
    cache.put("prompt", "answer")

    assert cache.get("prompt") == "answer"
    assert cache.get("other prompt") is None


def test_cache_evicts_oldest_insertion():
    """Test FIFO eviction: reads do not protect an entry."""
    cache = ResponseCache(max_entries=2)
    cache.put("a", "1")
    cache.put("b", "2")
    assert cache.get("a") == "1"

    cache.put("c", "3")

    assert len(cache) == 2
    assert cache.get("a") is None
    assert cache.get("b") == "2"
    assert cache.get("c") == "3"


def test_hash_keys_distinguish_shared_prefix():
    cache = ResponseCache()
    shared = "x" * 150
    cache.put(shared + " first", "one")

    assert cache.get(shared + " second") is None


def test_prefix_keys_collide_on_shared_prefix():
    cache = ResponseCache(key_mode="prefix", prefix_chars=100)
    shared = "x" * 150
    cache.put(shared + " first", "one")

    assert cache.get(shared + " second") == "one"


def test_cache_clear():
    cache = ResponseCache()
    cache.put("a", "1")
    cache.clear()
    assert len(cache) == 0


def test_cache_rejects_zero_size():
    with pytest.raises(ValueError):
        ResponseCache(max_entries=0)


# =============================================================================
# Context Assembler
# =============================================================================


@pytest.fixture
def store():
    fake = MagicMock()
    fake.load_recent_history = AsyncMock(return_value=[])
    return fake


@pytest.fixture
def vectors():
    fake = MagicMock()
    fake.retrieve_context_blocks = AsyncMock(return_value=[])
    return fake


def test_assemble_prompt_sections():
    prompt = ContextAssembler.assemble_prompt(
        "What changed?",
        ["[Context 1] release notes"],
        [UploadedFile(name="diff.txt", type="text/plain", content="+1 line")],
    )

    assert prompt == (
        "What changed?"
        "\n\nRelevant Context from Knowledge Base:\n[Context 1] release notes"
        "\n\nAttached Files Context:\nFile: diff.txt (text/plain)\nContent: +1 line"
    )


def test_assemble_prompt_without_context_is_message():
    assert ContextAssembler.assemble_prompt("hi") == "hi"


@pytest.mark.asyncio
async def test_enrichers_run_in_order_and_failures_skip(store, vectors):
    async def add_orders(message: str) -> str:
        return message + " [orders]"

    async def broken(message: str) -> str:
        raise ConnectionError("crm offline")

    async def add_tickets(message: str) -> str:
        return message + " [tickets]"

    assembler = ContextAssembler(store, vectors, enrichers=[add_orders, broken, add_tickets])

    assert await assembler.enrich("status?") == "status? [orders] [tickets]"


@pytest.mark.asyncio
async def test_semantic_context_failure_is_empty(store, vectors):
    vectors.retrieve_context_blocks.side_effect = RuntimeError("backend gone")
    assembler = ContextAssembler(store, vectors)

    assert await assembler.retrieve_semantic_context("anything") == []


@pytest.mark.asyncio
async def test_history_window_excludes_current_turn(store, vectors):
    entries = [
        ConversationEntry(id=f"e{i}", role=ConversationRole.USER, content=f"m{i}", timestamp_ms=i)
        for i in range(4)
    ]
    store.load_recent_history.return_value = entries
    assembler = ContextAssembler(store, vectors, history_window=3)

    history = await assembler.load_history("s1", exclude_entry_id="e3")

    store.load_recent_history.assert_awaited_once_with("s1", 4)
    assert [m.content for m in history] == ["m0", "m1", "m2"]


@pytest.mark.asyncio
async def test_history_failure_is_empty(store, vectors):
    store.load_recent_history.side_effect = RuntimeError("locked")
    assembler = ContextAssembler(store, vectors)

    assert await assembler.load_history("s1") == []
