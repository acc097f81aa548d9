"""
Memory API Routes for the KR1 memory runtime.

API Endpoints:
- GET /memory/stats - Store counts
- POST /memory/conversations - Store a turn
- GET /memory/conversations/{session_id} - Session history
- DELETE /memory/conversations/{session_id} - Delete a session
- GET /memory/search?q= - Lexical search over turns
- GET|POST|DELETE /memory/folders - Known folder paths
- GET|POST /memory/files - Generated downloadable files
- POST /memory/documents[/search|/context|/upload] - Vector memory
- POST /memory/reset - Full reset
- GET /memory/health - Service health

Memory errors map to HTTP status codes in memory_error_handler().
"""

from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from kr1_memory.errors import (
    InitializationError,
    MemoryLayerError,
    NotFoundError,
    NotInitializedError,
    TransientIOError,
    ValidationError,
    VectorMemoryError,
)
from kr1_memory.models import (
    AddDocumentRequest,
    AddDocumentResponse,
    CollectionInfo,
    ContextRequest,
    ContextResponse,
    ConversationHistoryResponse,
    DocumentSearchRequest,
    DocumentSearchResponse,
    DownloadableFile,
    FileProcessingStatus,
    FolderMetadata,
    FolderPathListResponse,
    FolderPathRequest,
    GeneratedFile,
    GenerateFileRequest,
    MemoryResetRequest,
    MemoryResetResponse,
    MemorySearchResponse,
    MemoryStats,
    StoreConversationRequest,
    StoreConversationResponse,
    UploadedFile,
)

if TYPE_CHECKING:
    from kr1_memory.memory import MemoryManager

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/memory", tags=["memory"])


# =============================================================================
# Dependency for Memory Manager
# =============================================================================

# Will be set during app initialization
_memory_manager: "MemoryManager | None" = None


def set_memory_manager(manager: "MemoryManager | None") -> None:
    """Set the memory manager (called during app init, cleared on shutdown)."""
    global _memory_manager
    _memory_manager = manager


def get_memory_manager() -> "MemoryManager":
    """Get the memory manager dependency."""
    if _memory_manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Memory service not initialized",
        )
    return _memory_manager


# =============================================================================
# Error Mapping
# =============================================================================

ERROR_STATUS_CODES: dict[type[MemoryLayerError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    NotInitializedError: status.HTTP_503_SERVICE_UNAVAILABLE,
    InitializationError: status.HTTP_503_SERVICE_UNAVAILABLE,
    TransientIOError: status.HTTP_503_SERVICE_UNAVAILABLE,
    VectorMemoryError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def memory_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Translate memory errors into JSON error responses."""
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    logger.warning(
        "Memory request failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# =============================================================================
# Stats
# =============================================================================


@router.get("/stats", response_model=MemoryStats)
async def get_stats(
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> MemoryStats:
    """Conversation, folder and live generated-file counts."""
    return await manager.get_stats()


# =============================================================================
# Conversations
# =============================================================================


@router.post("/conversations", response_model=StoreConversationResponse)
async def store_conversation(
    request: StoreConversationRequest,
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> StoreConversationResponse:
    entry_id = await manager.store.store_conversation(
        request.session_id,
        request.role,
        request.content,
        request.metadata,
    )
    return StoreConversationResponse(id=entry_id)


@router.get("/conversations/{session_id}", response_model=ConversationHistoryResponse)
async def get_conversation_history(
    session_id: str,
    limit: int = Query(default=100, ge=1, le=1000, description="Maximum turns"),
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> ConversationHistoryResponse:
    """
    Get turns for a session, oldest first.

    An unknown session returns an empty list.
    """
    messages = await manager.store.load_conversation_history(session_id, limit)
    return ConversationHistoryResponse(session_id=session_id, messages=messages)


@router.delete("/conversations/{session_id}", response_model=dict[str, int])
async def delete_conversation(
    session_id: str,
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> dict[str, int]:
    logger.info("Deleting session", session_id=session_id)
    deleted = await manager.store.delete_session(session_id)
    return {"deleted": deleted}


@router.get("/search", response_model=MemorySearchResponse)
async def search_memory(
    q: str = Query(..., min_length=1, description="Substring to find"),
    limit: int = Query(default=100, ge=1, le=1000),
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> MemorySearchResponse:
    """Case-insensitive substring search over turns, newest first."""
    results = await manager.store.search_memory(q, limit)
    return MemorySearchResponse(query=q, results=results)


# =============================================================================
# Folders
# =============================================================================


@router.get("/folders", response_model=FolderPathListResponse)
async def list_folders(
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> FolderPathListResponse:
    return FolderPathListResponse(folders=await manager.store.get_folder_paths())


@router.post("/folders", response_model=dict[str, str])
async def add_folder(
    request: FolderPathRequest,
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> dict[str, str]:
    """Register a folder; re-adding refreshes the existing entry."""
    metadata = request.metadata or FolderMetadata()
    folder_id = await manager.store.add_folder_path(request.absolute_path, metadata)
    return {"id": folder_id}


@router.delete("/folders", response_model=dict[str, bool])
async def delete_folder(
    path: str = Query(..., min_length=1, description="Absolute folder path"),
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> dict[str, bool]:
    if not await manager.store.delete_folder_path(path):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Folder not found",
        )
    return {"success": True}


# =============================================================================
# Generated Files
# =============================================================================


@router.post("/files", response_model=DownloadableFile)
async def generate_file(
    request: GenerateFileRequest,
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> DownloadableFile:
    """
    Generate a downloadable file that expires after the retention TTL.

    A live file with the same query_hash is returned with is_duplicate=true.
    """
    return await manager.store.generate_downloadable_file(
        request.data,
        request.filename,
        request.query_hash,
        request.file_type,
    )


@router.get("/files", response_model=list[GeneratedFile])
async def list_files(
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> list[GeneratedFile]:
    return await manager.store.list_generated_files()


@router.get("/files/{file_id}", response_model=GeneratedFile)
async def get_file(
    file_id: str,
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> GeneratedFile:
    generated = await manager.store.get_generated_file(file_id)
    if generated is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"File {file_id} not found",
        )
    return generated


# =============================================================================
# Documents (Vector Memory)
# =============================================================================


@router.post("/documents", response_model=AddDocumentResponse)
async def add_document(
    request: AddDocumentRequest,
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> AddDocumentResponse:
    document_id = await manager.vectors.add_document(request.content, request.metadata)
    return AddDocumentResponse(id=document_id)


@router.post("/documents/search", response_model=DocumentSearchResponse)
async def search_documents(
    request: DocumentSearchRequest,
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> DocumentSearchResponse:
    results = await manager.vectors.search_similar(
        request.query,
        request.limit,
        request.score_threshold,
    )
    return DocumentSearchResponse(results=results)


@router.post("/documents/context", response_model=ContextResponse)
async def retrieve_context(
    request: ContextRequest,
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> ContextResponse:
    """Context string built from the best matches within the character budget."""
    context = await manager.vectors.retrieve_context(request.query, request.limit)
    return ContextResponse(context=context)


@router.post("/documents/upload", response_model=list[FileProcessingStatus])
async def upload_documents(
    files: list[UploadedFile],
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> list[FileProcessingStatus]:
    """Ingest files; one failing file does not stop the batch."""
    logger.info("Processing uploaded files", count=len(files))
    return await manager.vectors.process_uploaded_files(files)


@router.get("/documents/info", response_model=CollectionInfo)
async def collection_info(
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> CollectionInfo:
    return await manager.vectors.get_collection_info()


@router.delete("/documents/{document_id}", response_model=dict[str, bool])
async def delete_document(
    document_id: str,
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> dict[str, bool]:
    return {"success": await manager.vectors.delete_document(document_id)}


# =============================================================================
# Memory Reset Endpoint
# =============================================================================


@router.post("/reset", response_model=MemoryResetResponse)
async def reset_memory(
    request: MemoryResetRequest,
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> MemoryResetResponse:
    """
    Perform full memory reset.

    CAUTION: This will delete ALL memory data.

    Clears the encrypted store (and generated files on disk), the vector
    collection and the response cache.

    Requires explicit confirmation (confirm_full_reset=true).
    """
    if not request.confirm_full_reset:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Full reset requires confirm_full_reset=true",
        )

    logger.warning("Full memory reset requested")
    return await manager.full_reset(request)


# =============================================================================
# Health Check Endpoint
# =============================================================================


@router.get("/health", response_model=dict[str, Any])
async def memory_health(
    manager: "MemoryManager" = Depends(get_memory_manager),  # type: ignore
) -> dict[str, Any]:
    """
    Check health of all memory services.

    Returns status of:
    - Encrypted store
    - Vector memory and its active backend
    - Whether the key is ephemeral
    """
    return await manager.health_check()
