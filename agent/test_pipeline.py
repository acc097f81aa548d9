"""
Test the conversation turn pipeline.

This test verifies:
1. Both sides of a turn are persisted and cached
2. Cache hits skip the model
3. Best-effort stages never abort a turn
4. Cancellation persists the stopped sentinel
5. Model failures surface as ModelCallError
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from kr1_memory.errors import ModelCallError, TurnCancelledError
from kr1_memory.memory import (
    CancellationToken,
    ContextAssembler,
    ConversationPipeline,
    ResponseCache,
)
from kr1_memory.memory.pipeline import STOPPED_MESSAGE
from kr1_memory.models import ConversationRole, TurnMetadata, UploadedFile


@pytest.fixture
def model():
    return AsyncMock(return_value="Here is the answer.")


@pytest.fixture
def pipeline(store, vector_memory, model):
    return ConversationPipeline(store, vector_memory, model)


@pytest.mark.asyncio
async def test_turn_persists_both_sides(pipeline, store, model):
    result = await pipeline.process_turn("s1", "What is KR1?")

    history = await store.load_conversation_history("s1")
    assert result.response == "Here is the answer."
    assert result.from_cache is False
    assert [(e.role, e.content) for e in history] == [
        (ConversationRole.USER, "What is KR1?"),
        (ConversationRole.ASSISTANT, "Here is the answer."),
    ]
    assert result.user_entry_id == history[0].id
    assert result.assistant_entry_id == history[1].id
    model.assert_awaited_once_with("What is KR1?", [])
    assert len(pipeline.cache) == 1


@pytest.mark.asyncio
async def test_history_passed_to_model(pipeline, store, model):
    """Test that prior turns reach the model without the current message."""
    await pipeline.process_turn("s1", "first question")
    await pipeline.process_turn("s1", "second question")

    prompt, history = model.await_args.args
    assert prompt == "second question"
    assert [(m.role, m.content) for m in history] == [
        (ConversationRole.USER, "first question"),
        (ConversationRole.ASSISTANT, "Here is the answer."),
    ]


@pytest.mark.asyncio
async def test_cache_hit_skips_model(pipeline, store, model):
    await pipeline.process_turn("s1", "same prompt")
    result = await pipeline.process_turn("s2", "same prompt")

    assert result.from_cache is True
    assert result.response == "Here is the answer."
    model.assert_awaited_once()

    assistant = (await store.load_conversation_history("s2"))[-1]
    assert assistant.role == ConversationRole.ASSISTANT
    assert isinstance(assistant.metadata, TurnMetadata)
    assert assistant.metadata.from_cache is True


@pytest.mark.asyncio
async def test_semantic_context_in_prompt(store, vector_memory, model):
    await vector_memory.add_document("KR1 stores memory locally")
    pipeline = ConversationPipeline(store, vector_memory, model)

    result = await pipeline.process_turn("s1", "KR1 stores memory locally?")

    prompt = model.await_args.args[0]
    assert "Relevant Context from Knowledge Base:\n[Context 1] KR1 stores memory locally" in prompt
    assert result.context_blocks == 1


@pytest.mark.asyncio
async def test_attachments_ingested_and_in_prompt(pipeline, store, vector_memory, model):
    attachment = UploadedFile(name="todo.txt", type="text/plain", size=9, content="buy milk")

    await pipeline.process_turn("s1", "Summarize", attachments=[attachment])

    prompt = model.await_args.args[0]
    assert prompt.endswith("Attached Files Context:\nFile: todo.txt (text/plain)\nContent: buy milk")
    assert (await vector_memory.get_collection_info()).points_count == 1
    user_turn = (await store.load_conversation_history("s1"))[0]
    assert user_turn.metadata.attachments == ["todo.txt"]


@pytest.mark.asyncio
async def test_best_effort_failures_do_not_abort(store, vector_memory, model):
    """Test that ingestion, retrieval and enrichment failures are swallowed."""

    async def broken_enricher(message: str) -> str:
        raise ConnectionError("connector offline")

    assembler = ContextAssembler(store, vector_memory, enrichers=[broken_enricher])
    pipeline = ConversationPipeline(store, vector_memory, model, assembler=assembler)
    attachment = UploadedFile(name="a.txt", type="text/plain", content="x")

    with patch.object(
        vector_memory, "process_uploaded_files", new=AsyncMock(side_effect=RuntimeError("disk"))
    ), patch.object(
        vector_memory, "retrieve_context_blocks", new=AsyncMock(side_effect=RuntimeError("gone"))
    ):
        result = await pipeline.process_turn("s1", "still works?", attachments=[attachment])

    assert result.response == "Here is the answer."
    assert result.context_blocks == 0


@pytest.mark.asyncio
async def test_model_failure_raises_model_call_error(store, vector_memory):
    model = AsyncMock(side_effect=RuntimeError("rate limited"))
    pipeline = ConversationPipeline(store, vector_memory, model)

    with pytest.raises(ModelCallError):
        await pipeline.process_turn("s1", "hello")

    history = await store.load_conversation_history("s1")
    assert [e.role for e in history] == [ConversationRole.USER]
    assert len(pipeline.cache) == 0


@pytest.mark.asyncio
async def test_cancellation_persists_stopped_sentinel(store, vector_memory):
    """Test that a cancelled model call leaves a system sentinel in history."""
    started = asyncio.Event()

    async def slow_model(prompt, history):
        started.set()
        await asyncio.sleep(3600)
        return "never"

    pipeline = ConversationPipeline(store, vector_memory, slow_model)
    token = CancellationToken()

    task = asyncio.create_task(pipeline.process_turn("s1", "long answer please", cancel_token=token))
    await asyncio.wait_for(started.wait(), timeout=5)
    token.cancel()

    with pytest.raises(TurnCancelledError):
        await asyncio.wait_for(task, timeout=5)

    history = await store.load_conversation_history("s1")
    assert [(e.role, e.content) for e in history] == [
        (ConversationRole.USER, "long answer please"),
        (ConversationRole.SYSTEM, STOPPED_MESSAGE),
    ]
    assert history[1].metadata.stopped is True
    assert len(pipeline.cache) == 0


@pytest.mark.asyncio
async def test_cancelled_before_model_call(store, vector_memory, model):
    pipeline = ConversationPipeline(store, vector_memory, model)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(TurnCancelledError):
        await pipeline.process_turn("s1", "hello", cancel_token=token)

    model.assert_called_once()
    history = await store.load_conversation_history("s1")
    assert history[-1].content == STOPPED_MESSAGE


@pytest.mark.asyncio
async def test_shared_cache_across_pipelines(store, vector_memory, model):
    cache = ResponseCache(max_entries=1)
    pipeline = ConversationPipeline(store, vector_memory, model, cache=cache)

    await pipeline.process_turn("s1", "one")
    await pipeline.process_turn("s1", "two")

    assert cache.get("one") is None
    assert cache.get("two") == "Here is the answer."
