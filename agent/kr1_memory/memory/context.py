"""
Context Assembler and Response Cache.

Assembly happens before the model call:
1. Recent session history (encrypted store)
2. Semantic recall (vector memory, character-budgeted)
3. Connector enrichment (external collaborators)
4. Attached file contents

Every retrieval step is best-effort: failures are logged and the step
contributes nothing.
"""

import hashlib
from collections import OrderedDict
from typing import Awaitable, Callable, Final, Literal

import structlog

from kr1_memory.memory.store import EncryptedMemoryStore
from kr1_memory.memory.vector_service import CONTEXT_SEPARATOR, VectorMemoryService
from kr1_memory.models import ChatMessage, UploadedFile

logger = structlog.get_logger(__name__)

DEFAULT_CACHE_SIZE: Final[int] = 100
DEFAULT_CACHE_PREFIX_CHARS: Final[int] = 100
DEFAULT_HISTORY_WINDOW: Final[int] = 10

# Enricher takes the message and returns it with connector context added
ContextEnricher = Callable[[str], Awaitable[str]]

CacheKeyMode = Literal["hash", "prefix"]


class ResponseCache:
    """
    Assembled-prompt to response cache with FIFO eviction.

    The oldest insertion is evicted once the size limit is exceeded; reads do
    not refresh an entry. Keys are a SHA-256 of the full prompt by default;
    "prefix" mode keys on the first prefix_chars characters, so distinct
    prompts sharing a prefix collide.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_CACHE_SIZE,
        key_mode: CacheKeyMode = "hash",
        prefix_chars: int = DEFAULT_CACHE_PREFIX_CHARS,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._key_mode = key_mode
        self._prefix_chars = prefix_chars
        self._entries: OrderedDict[str, str] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def key_for(self, prompt: str) -> str:
        if self._key_mode == "prefix":
            return prompt[: self._prefix_chars]
        return hashlib.sha256(prompt.encode("utf-8")).hexdigest()

    def get(self, prompt: str) -> str | None:
        return self._entries.get(self.key_for(prompt))

    def put(self, prompt: str, response: str) -> None:
        # Re-inserting keeps the original position in the eviction order
        self._entries[self.key_for(prompt)] = response
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()


class ContextAssembler:
    """
    Builds the final prompt and history for a turn.

    The semantic section is bounded by the vector service's character budget;
    history is bounded by the window size.
    """

    def __init__(
        self,
        store: EncryptedMemoryStore,
        vector_memory: VectorMemoryService,
        enrichers: list[ContextEnricher] | None = None,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        context_limit: int = 3,
    ) -> None:
        self._store = store
        self._vector_memory = vector_memory
        self._enrichers = list(enrichers or [])
        self._history_window = history_window
        self._context_limit = context_limit

    async def load_history(
        self,
        session_id: str,
        exclude_entry_id: str | None = None,
    ) -> list[ChatMessage]:
        """
        Most recent turns of the session, oldest first.

        Args:
            session_id: Session to read
            exclude_entry_id: Entry left out of the window (the turn being answered)
        """
        if self._history_window <= 0:
            return []
        try:
            entries = await self._store.load_recent_history(session_id, self._history_window + 1)
        except Exception as e:
            logger.warning("Failed to load history", session_id=session_id, error=str(e))
            return []

        entries = [entry for entry in entries if entry.id != exclude_entry_id]
        return [
            ChatMessage(role=entry.role, content=entry.content)
            for entry in entries[-self._history_window :]
        ]

    async def retrieve_semantic_context(self, message: str) -> list[str]:
        try:
            blocks = await self._vector_memory.retrieve_context_blocks(message, self._context_limit)
        except Exception as e:
            logger.warning("Semantic context retrieval failed", error=str(e))
            return []
        if blocks:
            logger.debug("Semantic context retrieved", blocks=len(blocks))
        return blocks

    async def enrich(self, message: str) -> str:
        """Run connector enrichers in order; a failing one is skipped."""
        enriched = message
        for enricher in self._enrichers:
            try:
                enriched = await enricher(enriched)
            except Exception as e:
                logger.warning(
                    "Connector enrichment failed",
                    enricher=getattr(enricher, "__name__", type(enricher).__name__),
                    error=str(e),
                )
        return enriched

    @staticmethod
    def assemble_prompt(
        message: str,
        context_blocks: list[str] | None = None,
        attachments: list[UploadedFile] | None = None,
    ) -> str:
        prompt = message
        if context_blocks:
            semantic_context = CONTEXT_SEPARATOR.join(context_blocks)
            prompt = f"{prompt}\n\nRelevant Context from Knowledge Base:\n{semantic_context}"
        if attachments:
            file_context = "\n\n".join(
                f"File: {file.name} ({file.type})\nContent: {file.content}" for file in attachments
            )
            prompt = f"{prompt}\n\nAttached Files Context:\n{file_context}"
        return prompt
