"""
Shared Pydantic models for the KR1 memory runtime.

This module provides centralized model definitions to avoid circular imports
and ensure consistent typing across the memory services.
"""

from kr1_memory.models.base import (
    # Pipeline models
    ChatMessage,
    TurnResult,
    # API models
    HealthResponse,
    StoreConversationRequest,
    StoreConversationResponse,
    ConversationHistoryResponse,
    MemorySearchResponse,
    FolderPathRequest,
    FolderPathListResponse,
    GenerateFileRequest,
    AddDocumentRequest,
    AddDocumentResponse,
    DocumentSearchRequest,
    DocumentSearchResponse,
    ContextRequest,
    ContextResponse,
    MemoryResetRequest,
    MemoryResetResponse,
)

from kr1_memory.models.memory import (
    # Enums
    ConversationRole,
    FileType,
    # Metadata
    TurnMetadata,
    SearchMetadata,
    FolderMetadata,
    UploadMetadata,
    OpaqueMetadata,
    Metadata,
    coerce_metadata,
    dump_metadata,
    load_metadata,
    # Encrypted store
    ConversationEntry,
    FolderPath,
    GeneratedFile,
    DownloadableFile,
    MemoryStats,
    # Vector memory
    Document,
    DocumentSearchResult,
    UploadedFile,
    FileProcessingStatus,
    CollectionInfo,
    VectorPoint,
    ScoredPoint,
)

__all__ = [
    # Pipeline
    "ChatMessage",
    "TurnResult",
    # API
    "HealthResponse",
    "StoreConversationRequest",
    "StoreConversationResponse",
    "ConversationHistoryResponse",
    "MemorySearchResponse",
    "FolderPathRequest",
    "FolderPathListResponse",
    "GenerateFileRequest",
    "AddDocumentRequest",
    "AddDocumentResponse",
    "DocumentSearchRequest",
    "DocumentSearchResponse",
    "ContextRequest",
    "ContextResponse",
    "MemoryResetRequest",
    "MemoryResetResponse",
    # Enums
    "ConversationRole",
    "FileType",
    # Metadata
    "TurnMetadata",
    "SearchMetadata",
    "FolderMetadata",
    "UploadMetadata",
    "OpaqueMetadata",
    "Metadata",
    "coerce_metadata",
    "dump_metadata",
    "load_metadata",
    # Store
    "ConversationEntry",
    "FolderPath",
    "GeneratedFile",
    "DownloadableFile",
    "MemoryStats",
    # Vector
    "Document",
    "DocumentSearchResult",
    "UploadedFile",
    "FileProcessingStatus",
    "CollectionInfo",
    "VectorPoint",
    "ScoredPoint",
]
