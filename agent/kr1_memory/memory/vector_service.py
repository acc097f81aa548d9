"""
Vector Memory Service for semantic recall.

- Backend chosen once at startup: Qdrant when reachable, otherwise the
  in-process backend with the same contract
- No re-promotion to Qdrant later in the process lifetime
- Fixed embedding dimension per collection
- Document content encrypted in the payload when an encryption service is set
"""

import asyncio
import json
from datetime import datetime
from typing import Any, Callable, Final

import structlog

from kr1_memory.errors import NotInitializedError, VectorMemoryError
from kr1_memory.memory.embeddings import (
    EmbeddingFunction,
    create_fallback_embedding_function,
    normalize,
)
from kr1_memory.memory.encryption import EncryptionError, EncryptionService
from kr1_memory.memory.vector_backends import COSINE, InMemoryVectorBackend, VectorBackend
from kr1_memory.models import (
    CollectionInfo,
    Document,
    DocumentSearchResult,
    FileProcessingStatus,
    UploadMetadata,
    UploadedFile,
    VectorPoint,
    coerce_metadata,
    dump_metadata,
    load_metadata,
)

logger = structlog.get_logger(__name__)

DEFAULT_COLLECTION: Final[str] = "kr_documents"
DEFAULT_VECTOR_SIZE: Final[int] = 384  # all-MiniLM-L6-v2 size
DEFAULT_CONTEXT_CHAR_BUDGET: Final[int] = 2000
CONTEXT_SEPARATOR: Final[str] = "\n\n"

PASSTHROUGH_SUFFIXES: Final[tuple[str, ...]] = (".txt", ".md", ".csv")


def extract_file_text(file: UploadedFile) -> str:
    """
    Text representation of an uploaded file.

    Plain text passes through, JSON is pretty-printed again, anything else
    becomes a short description of the file.

    Raises:
        ValueError: If a .json file does not parse
    """
    name = file.name.lower()
    if "text" in file.type or name.endswith(PASSTHROUGH_SUFFIXES):
        return file.content
    if name.endswith(".json") or file.type == "application/json":
        return json.dumps(json.loads(file.content), indent=2)
    return f"File: {file.name} ({file.type}) - Size: {file.size} bytes"


class VectorMemoryService:
    """
    Embedded-document memory with similarity search.

    Every operation except embed() fails fast with NotInitializedError
    until initialize() has picked a backend.
    """

    def __init__(
        self,
        primary: VectorBackend | None = None,
        embedding_fn: EmbeddingFunction | None = None,
        collection_name: str = DEFAULT_COLLECTION,
        vector_size: int = DEFAULT_VECTOR_SIZE,
        context_char_budget: int = DEFAULT_CONTEXT_CHAR_BUDGET,
        context_score_threshold: float | None = None,
        encryption: EncryptionService | None = None,
        fallback_factory: Callable[[], VectorBackend] = InMemoryVectorBackend,
    ) -> None:
        """
        Initialize the service (no I/O until initialize()).

        Args:
            primary: Preferred backend (e.g. Qdrant); None goes straight to fallback
            embedding_fn: Model-backed embedder; None uses the hashed fallback
            collection_name: Collection holding documents
            vector_size: Embedding dimension
            context_char_budget: Character budget for retrieve_context()
            context_score_threshold: Minimum score for context blocks
            encryption: Encrypts document content in payloads
            fallback_factory: Builds the in-process backend
        """
        self._primary = primary
        self._collection = collection_name
        self._vector_size = vector_size
        self._context_char_budget = context_char_budget
        self._context_score_threshold = context_score_threshold
        self._encryption = encryption
        self._fallback_factory = fallback_factory

        self._embedding_fn = embedding_fn or create_fallback_embedding_function(vector_size)
        self._uses_fallback_embeddings = embedding_fn is None

        self._backend: VectorBackend | None = None
        self._init_lock = asyncio.Lock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_initialized(self) -> bool:
        return self._backend is not None

    @property
    def backend_name(self) -> str | None:
        return self._backend.name if self._backend is not None else None

    @property
    def uses_fallback_embeddings(self) -> bool:
        return self._uses_fallback_embeddings

    async def initialize(self) -> None:
        """
        Pick the backend and embedder for the process lifetime.

        An embedder that fails its first call, or returns the wrong dimension,
        is replaced by the hashed fallback.

        Raises:
            VectorMemoryError: If both the primary and the fallback fail
        """
        async with self._init_lock:
            if self._backend is not None:
                return

            await self._check_embeddings()

            if self._primary is not None:
                try:
                    await self._ensure_collection(self._primary)
                    self._backend = self._primary
                    logger.info(
                        "Vector memory initialized",
                        backend=self._primary.name,
                        collection=self._collection,
                    )
                    return
                except Exception as e:
                    logger.warning(
                        "Primary vector backend unavailable, falling back to in-process memory",
                        backend=self._primary.name,
                        error=str(e),
                    )

            try:
                fallback = self._fallback_factory()
                await self._ensure_collection(fallback)
            except Exception as e:
                logger.error("Fallback vector backend failed", error=str(e))
                raise VectorMemoryError(f"No usable vector backend: {e}") from e

            self._backend = fallback
            logger.info(
                "Vector memory initialized",
                backend=fallback.name,
                collection=self._collection,
                fallback_embeddings=self._uses_fallback_embeddings,
            )

    async def _check_embeddings(self) -> None:
        if self._uses_fallback_embeddings:
            return
        try:
            vector = await self._embedding_fn("embedding check")
            if len(vector) != self._vector_size:
                raise VectorMemoryError(
                    f"Embedding dimension {len(vector)} does not match {self._vector_size}"
                )
        except Exception as e:
            logger.warning("Embedding backend unavailable, using fallback embeddings", error=str(e))
            self._embedding_fn = create_fallback_embedding_function(self._vector_size)
            self._uses_fallback_embeddings = True

    async def _ensure_collection(self, backend: VectorBackend) -> None:
        if self._collection not in await backend.list_collections():
            await backend.create_collection(self._collection, self._vector_size, COSINE)

    def _require_backend(self) -> VectorBackend:
        if self._backend is None:
            raise NotInitializedError("Vector memory service not initialized")
        return self._backend

    async def close(self) -> None:
        if self._backend is not None:
            await self._backend.close()
        # An unused primary may still hold a client connection
        if self._primary is not None and self._primary is not self._backend:
            try:
                await self._primary.close()
            except Exception as e:
                logger.debug("Failed to close unused primary backend", error=str(e))

    # =========================================================================
    # Embedding
    # =========================================================================

    async def embed(self, text: str) -> list[float]:
        """
        Embed text as a unit-length vector of the collection dimension.

        Raises:
            VectorMemoryError: If the embedder returns the wrong dimension
        """
        vector = await self._embedding_fn(text)
        if len(vector) != self._vector_size:
            raise VectorMemoryError(
                f"Embedding dimension {len(vector)} does not match {self._vector_size}"
            )
        return normalize(list(vector))

    # =========================================================================
    # Documents
    # =========================================================================

    def _payload(self, document: Document) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": document.timestamp.isoformat(),
            "metadata": dump_metadata(document.metadata),
        }
        if self._encryption is not None:
            payload["content_encrypted"] = self._encryption.encrypt(document.content)
        else:
            payload["content"] = document.content
        return payload

    def _content_from_payload(self, payload: dict[str, Any]) -> str:
        encrypted = payload.get("content_encrypted")
        if encrypted:
            if self._encryption is None:
                raise EncryptionError("Encrypted document found but no encryption service set")
            return self._encryption.decrypt(encrypted)
        return str(payload.get("content", ""))

    async def add_document(self, content: str, metadata: Any = None) -> str:
        """
        Embed and store a document.

        Args:
            content: Document text
            metadata: Typed metadata or a plain dict

        Returns:
            Document ID
        """
        backend = self._require_backend()

        document = Document(
            content=content,
            embedding=await self.embed(content),
            metadata=coerce_metadata(metadata),
        )
        await backend.upsert(
            self._collection,
            [VectorPoint(id=document.id, vector=document.embedding, payload=self._payload(document))],
        )

        logger.debug("Document added", document_id=document.id, backend=backend.name)
        return document.id

    async def search_similar(
        self,
        query: str,
        limit: int = 5,
        score_threshold: float | None = None,
    ) -> list[DocumentSearchResult]:
        """
        Rank stored documents by cosine similarity to the query.

        Args:
            query: Query text
            limit: Maximum results
            score_threshold: Minimum score to include

        Returns:
            Results by descending score; ties keep insertion order
        """
        backend = self._require_backend()
        if limit < 1:
            return []

        points = await backend.search(
            self._collection,
            await self.embed(query),
            limit,
            score_threshold,
        )

        results: list[DocumentSearchResult] = []
        for point in points:
            try:
                timestamp = point.payload.get("timestamp")
                results.append(
                    DocumentSearchResult(
                        id=point.id,
                        score=point.score,
                        content=self._content_from_payload(point.payload),
                        metadata=load_metadata(point.payload.get("metadata")),
                        timestamp=datetime.fromisoformat(timestamp) if timestamp else None,
                    )
                )
            except (EncryptionError, ValueError) as e:
                logger.warning("Failed to parse search result", result_id=point.id, error=str(e))

        return results

    async def retrieve_context_blocks(self, query: str, limit: int = 3) -> list[str]:
        """
        Best matches as ``[Context N] <content>`` blocks within the character budget.

        Blocks are taken in score order until the next one, joined with the
        separator, would exceed the budget. A block that does not fit is never
        truncated; if the first one does not fit the result is empty.
        """
        results = await self.search_similar(query, limit, self._context_score_threshold)

        blocks: list[str] = []
        used = 0
        for index, result in enumerate(results, start=1):
            block = f"[Context {index}] {result.content}"
            added = len(block) + (len(CONTEXT_SEPARATOR) if blocks else 0)
            if used + added > self._context_char_budget:
                break
            blocks.append(block)
            used += added

        return blocks

    async def retrieve_context(self, query: str, limit: int = 3) -> str:
        """Bounded context string built from retrieve_context_blocks()."""
        return CONTEXT_SEPARATOR.join(await self.retrieve_context_blocks(query, limit))

    async def process_uploaded_files(self, files: list[UploadedFile]) -> list[FileProcessingStatus]:
        """
        Ingest uploaded files, one document per file.

        A failing file is reported and does not stop the batch.
        """
        self._require_backend()

        statuses: list[FileProcessingStatus] = []
        for file in files:
            try:
                content = extract_file_text(file)
                document_id = await self.add_document(
                    content,
                    UploadMetadata(filename=file.name, filetype=file.type, filesize=file.size),
                )
                statuses.append(
                    FileProcessingStatus(filename=file.name, status="processed", id=document_id)
                )
            except Exception as e:
                logger.warning("Failed to process uploaded file", filename=file.name, error=str(e))
                statuses.append(FileProcessingStatus(filename=file.name, status="error", error=str(e)))

        return statuses

    async def delete_document(self, document_id: str) -> bool:
        backend = self._require_backend()
        await backend.delete(self._collection, [document_id])
        logger.debug("Document deleted", document_id=document_id)
        return True

    async def clear_collection(self) -> bool:
        backend = self._require_backend()
        await backend.delete(self._collection, None)
        logger.info("Vector collection cleared", collection=self._collection)
        return True

    async def get_collection_info(self) -> CollectionInfo:
        backend = self._require_backend()
        return await backend.get_collection_info(self._collection)

    async def health_check(self) -> bool:
        """
        Check the active backend.

        Returns:
            True if healthy
        """
        if self._backend is None:
            return False
        try:
            await self._backend.list_collections()
            return True
        except Exception as e:
            logger.error("Vector memory health check failed", error=str(e))
            return False
