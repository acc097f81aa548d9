"""
Memory Manager for the KR1 memory runtime.

Central owner of the memory services:
- Constructs and wires key manager, store, vector memory, cache and pipeline
- Runs startup and shutdown in order
- Manages full reset logic
- Provides health checks for the API
"""

from typing import Any

import structlog

from kr1_memory.config import Settings
from kr1_memory.errors import NotInitializedError
from kr1_memory.memory.context import ContextAssembler, ContextEnricher, ResponseCache
from kr1_memory.memory.embeddings import create_openai_embedding_function
from kr1_memory.memory.encryption import EncryptionService
from kr1_memory.memory.keys import FileSecretStore, KeyManager, SecretStore
from kr1_memory.memory.pipeline import CancellationToken, ChatModel, ConversationPipeline
from kr1_memory.memory.retention import Clock, system_clock_ms
from kr1_memory.memory.store import EncryptedMemoryStore
from kr1_memory.memory.vector_backends import QdrantVectorBackend, VectorBackend
from kr1_memory.memory.vector_service import VectorMemoryService
from kr1_memory.models import (
    MemoryResetRequest,
    MemoryResetResponse,
    MemoryStats,
    TurnResult,
    UploadedFile,
)

logger = structlog.get_logger(__name__)


class MemoryManager:
    """
    Central manager for all memory operations.

    Provides:
    - Owned handles to the store, vector memory and response cache
    - Conversation turns when a chat model is configured
    - Full reset logic
    - Health checks
    """

    def __init__(
        self,
        key_manager: KeyManager,
        store: EncryptedMemoryStore,
        vectors: VectorMemoryService,
        cache: ResponseCache,
        pipeline: ConversationPipeline | None = None,
    ) -> None:
        """
        Initialize memory manager.

        Args:
            key_manager: Store key owner
            store: Encrypted store
            vectors: Vector memory service
            cache: Response cache shared with the pipeline
            pipeline: Turn pipeline (None when no chat model is configured)
        """
        self._key_manager = key_manager
        self._store = store
        self._vectors = vectors
        self._cache = cache
        self._pipeline = pipeline
        logger.info("Memory manager created", pipeline=pipeline is not None)

    @property
    def store(self) -> EncryptedMemoryStore:
        return self._store

    @property
    def vectors(self) -> VectorMemoryService:
        return self._vectors

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def key_manager(self) -> KeyManager:
        return self._key_manager

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """
        Initialize store and vector memory.

        Raises:
            InitializationError: If the store cannot be opened with the key
            VectorMemoryError: If no vector backend is usable
        """
        await self._store.initialize()
        await self._vectors.initialize()
        logger.info(
            "Memory manager initialized",
            vector_backend=self._vectors.backend_name,
            ephemeral_key=self._key_manager.is_ephemeral,
        )

    async def close(self) -> None:
        await self._store.close()
        try:
            await self._vectors.close()
        except Exception as e:
            logger.warning("Failed to close vector backend", error=str(e))
        logger.info("Memory manager closed")

    # =========================================================================
    # Conversation
    # =========================================================================

    async def process_turn(
        self,
        session_id: str,
        message: str,
        attachments: list[UploadedFile] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> TurnResult:
        """
        Run a conversation turn through the pipeline.

        Raises:
            NotInitializedError: If no chat model was configured
        """
        if self._pipeline is None:
            raise NotInitializedError("No chat model configured for conversation turns")
        return await self._pipeline.process_turn(session_id, message, attachments, cancel_token)

    async def get_stats(self) -> MemoryStats:
        return await self._store.get_memory_stats()

    # =========================================================================
    # Full Reset Logic
    # =========================================================================

    async def full_reset(self, request: MemoryResetRequest) -> MemoryResetResponse:
        """
        Execute full memory reset.

        Reset clears, in order:
        1. Encrypted store (turns, folders, generated files)
        2. Vector collection
        3. Response cache

        Args:
            request: Reset request with confirmation

        Returns:
            Reset result, each step reported separately
        """
        if not request.confirm_full_reset:
            return MemoryResetResponse(
                success=False,
                store_cleared=False,
                vectors_cleared=False,
                cache_cleared=False,
                error="Reset not confirmed",
            )

        logger.warning("Starting full memory reset")

        store_cleared = False
        vectors_cleared = False
        cache_cleared = False
        errors: list[str] = []

        # 1. Clear encrypted store
        try:
            store_cleared = await self._store.clear_all_memory()
            if not store_cleared:
                errors.append("Store: clear failed")
        except Exception as e:
            errors.append(f"Store: {e}")
            logger.error("Failed to clear store", error=str(e))

        # 2. Clear vector memory
        try:
            vectors_cleared = await self._vectors.clear_collection()
        except Exception as e:
            errors.append(f"Vectors: {e}")
            logger.error("Failed to clear vector memory", error=str(e))

        # 3. Clear response cache
        self._cache.clear()
        cache_cleared = True

        success = store_cleared and vectors_cleared and cache_cleared
        error = "; ".join(errors) if errors else None

        if success:
            logger.warning("Full memory reset completed successfully")
        else:
            logger.error("Full memory reset completed with errors", errors=errors)

        return MemoryResetResponse(
            success=success,
            store_cleared=store_cleared,
            vectors_cleared=vectors_cleared,
            cache_cleared=cache_cleared,
            error=error,
        )

    # =========================================================================
    # Health Checks
    # =========================================================================

    async def health_check(self) -> dict[str, Any]:
        """
        Check health of all memory services.

        Returns:
            Dict with service health status
        """
        return {
            "store": await self._store.health_check(),
            "vectors": await self._vectors.health_check(),
            "vector_backend": self._vectors.backend_name,
            "ephemeral_key": self._key_manager.is_ephemeral,
        }


# =============================================================================
# Factory Function
# =============================================================================


async def create_memory_manager(
    settings: Settings,
    secret_store: SecretStore | None = None,
    model: ChatModel | None = None,
    enrichers: list[ContextEnricher] | None = None,
    vector_backend: VectorBackend | None = None,
    clock: Clock = system_clock_ms,
) -> MemoryManager:
    """
    Create a memory manager with all dependencies wired from settings.

    Nothing is opened here; call initialize() on the result.

    Args:
        settings: Application settings
        secret_store: Key storage (a file store in the data dir by default)
        model: Chat model for conversation turns
        enrichers: Connector enrichers run on each turn
        vector_backend: Primary vector backend (Qdrant at settings.qdrant_url by default)
        clock: Epoch-millisecond clock

    Returns:
        Configured memory manager
    """
    key_manager = KeyManager(
        secret_store or FileSecretStore(settings.data_dir),
        settings.secret_name,
    )
    # The same key encrypts document payloads in vector memory
    key = await key_manager.get_or_create_key()

    store = EncryptedMemoryStore(
        database_path=settings.database_path,
        downloads_dir=settings.downloads_dir,
        key_manager=key_manager,
        clock=clock,
        file_ttl_seconds=settings.generated_file_ttl_seconds,
        sweep_interval_seconds=settings.sweep_interval_seconds,
    )

    vectors = VectorMemoryService(
        primary=vector_backend or QdrantVectorBackend.from_url(settings.qdrant_url),
        embedding_fn=create_openai_embedding_function(
            settings.openai_api_key,
            settings.embedding_model,
            settings.vector_size,
        ),
        collection_name=settings.qdrant_collection,
        vector_size=settings.vector_size,
        context_char_budget=settings.context_char_budget,
        context_score_threshold=settings.context_score_threshold,
        encryption=EncryptionService(key),
    )

    cache = ResponseCache(
        max_entries=settings.response_cache_size,
        key_mode=settings.response_cache_key_mode,
        prefix_chars=settings.response_cache_prefix_chars,
    )

    pipeline = None
    if model is not None:
        assembler = ContextAssembler(
            store,
            vectors,
            enrichers=enrichers,
            history_window=settings.history_window,
            context_limit=settings.context_limit,
        )
        pipeline = ConversationPipeline(store, vectors, model, cache=cache, assembler=assembler)

    return MemoryManager(
        key_manager=key_manager,
        store=store,
        vectors=vectors,
        cache=cache,
        pipeline=pipeline,
    )
