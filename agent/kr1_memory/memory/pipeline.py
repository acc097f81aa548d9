"""
Conversation turn pipeline.

Per turn:
1. Persist the user turn
2. Ingest attached files into vector memory (best-effort)
3. Retrieve semantic context (best-effort)
4. Run connector enrichment (best-effort)
5. Assemble the final prompt
6. Check the response cache, call the model on a miss
7. Persist the assistant turn
8. Cache the response

Only a model failure or a cancellation ends a turn early. Memory writes are
never cancelled.
"""

import asyncio
from typing import Awaitable, Callable, Final, TypeVar

import structlog

from kr1_memory.errors import ModelCallError, TurnCancelledError
from kr1_memory.memory.context import ContextAssembler, ResponseCache
from kr1_memory.memory.store import EncryptedMemoryStore
from kr1_memory.memory.vector_service import VectorMemoryService
from kr1_memory.models import (
    ChatMessage,
    ConversationRole,
    TurnMetadata,
    TurnResult,
    UploadedFile,
)

logger = structlog.get_logger(__name__)

STOPPED_MESSAGE: Final[str] = "Message generation was stopped."

# Model receives the assembled prompt and prior history, returns the reply
ChatModel = Callable[[str, list[ChatMessage]], Awaitable[str]]

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation for a single turn."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelledError("Turn cancelled")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await a result unless the token is cancelled first.

        Raises:
            TurnCancelledError: If cancelled before the awaitable finished
        """
        if self.is_cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise TurnCancelledError("Turn cancelled")

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise TurnCancelledError("Turn cancelled")


class ConversationPipeline:
    """
    Runs conversation turns against memory and an external model.

    Used for:
    - Persisting both sides of every turn
    - Feeding semantic context and recent history to the model
    - Short-circuiting repeated prompts through the response cache
    """

    def __init__(
        self,
        store: EncryptedMemoryStore,
        vector_memory: VectorMemoryService,
        model: ChatModel,
        cache: ResponseCache | None = None,
        assembler: ContextAssembler | None = None,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            store: Encrypted store for turns
            vector_memory: Vector memory for attachments and recall
            model: External chat model
            cache: Response cache (a default one when omitted)
            assembler: Context assembler (a default one when omitted)
        """
        self._store = store
        self._vector_memory = vector_memory
        self._model = model
        self._cache = cache if cache is not None else ResponseCache()
        self._assembler = assembler or ContextAssembler(store, vector_memory)

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    async def process_turn(
        self,
        session_id: str,
        message: str,
        attachments: list[UploadedFile] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> TurnResult:
        """
        Run one conversation turn.

        Args:
            session_id: Conversation session
            message: User message
            attachments: Files sent with the message
            cancel_token: Cancels the model call

        Returns:
            Turn result with the response text

        Raises:
            TurnCancelledError: If cancelled before the model answered
            ModelCallError: If the model call failed
            TransientIOError: If the user turn could not be stored
        """
        attachments = attachments or []
        token = cancel_token or CancellationToken()

        user_entry_id = await self._store.store_conversation(
            session_id,
            ConversationRole.USER,
            message,
            TurnMetadata(attachments=[file.name for file in attachments]),
        )

        if attachments:
            await self._ingest_attachments(attachments)

        blocks = await self._assembler.retrieve_semantic_context(message)
        context_blocks = len(blocks)
        enriched = await self._assembler.enrich(message)
        prompt = self._assembler.assemble_prompt(enriched, blocks, attachments)

        cached = self._cache.get(prompt)
        if cached is not None:
            logger.info("Response cache hit", session_id=session_id)
            assistant_entry_id = await self._store_assistant_turn(
                session_id,
                cached,
                TurnMetadata(context_blocks=context_blocks, from_cache=True),
            )
            return TurnResult(
                session_id=session_id,
                response=cached,
                from_cache=True,
                context_blocks=context_blocks,
                user_entry_id=user_entry_id,
                assistant_entry_id=assistant_entry_id,
            )

        history = await self._assembler.load_history(session_id, exclude_entry_id=user_entry_id)

        try:
            response = await token.run(self._model(prompt, history))
        except TurnCancelledError:
            logger.info("Turn cancelled", session_id=session_id)
            await self._store_assistant_turn(
                session_id,
                STOPPED_MESSAGE,
                TurnMetadata(stopped=True),
                role=ConversationRole.SYSTEM,
            )
            raise
        except Exception as e:
            logger.error("Model call failed", session_id=session_id, error=str(e))
            raise ModelCallError(f"Model call failed: {e}") from e

        assistant_entry_id = await self._store_assistant_turn(
            session_id,
            response,
            TurnMetadata(context_blocks=context_blocks),
        )
        self._cache.put(prompt, response)

        logger.info(
            "Turn completed",
            session_id=session_id,
            context_blocks=context_blocks,
            response_length=len(response),
        )
        return TurnResult(
            session_id=session_id,
            response=response,
            context_blocks=context_blocks,
            user_entry_id=user_entry_id,
            assistant_entry_id=assistant_entry_id,
        )

    async def _ingest_attachments(self, attachments: list[UploadedFile]) -> None:
        try:
            statuses = await self._vector_memory.process_uploaded_files(attachments)
        except Exception as e:
            logger.warning("Attachment ingestion failed", error=str(e))
            return
        failed = [status.filename for status in statuses if status.status == "error"]
        if failed:
            logger.warning("Some attachments were not ingested", files=failed)

    async def _store_assistant_turn(
        self,
        session_id: str,
        content: str,
        metadata: TurnMetadata,
        role: ConversationRole = ConversationRole.ASSISTANT,
    ) -> str | None:
        # The reply was already produced; a failed write is logged, not raised
        try:
            return await self._store.store_conversation(session_id, role, content, metadata)
        except Exception as e:
            logger.error("Failed to store turn", session_id=session_id, role=role.value, error=str(e))
            return None
