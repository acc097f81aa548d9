"""
API and pipeline Pydantic models for the KR1 memory runtime.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from kr1_memory.models.memory import (
    ConversationEntry,
    ConversationRole,
    DocumentSearchResult,
    FileType,
    FolderPath,
)


# =============================================================================
# Pipeline Models
# =============================================================================


class ChatMessage(BaseModel):
    """Message handed to the external model as history."""

    role: ConversationRole
    content: str


class TurnResult(BaseModel):
    """Outcome of one conversation turn."""

    session_id: str
    response: str
    from_cache: bool = False
    context_blocks: int = 0
    user_entry_id: str | None = None
    assistant_entry_id: str | None = None


# =============================================================================
# API Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    uptime: float


class StoreConversationRequest(BaseModel):
    """Request to persist a conversation turn."""

    session_id: Optional[str] = None
    role: ConversationRole
    content: str = Field(..., min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class StoreConversationResponse(BaseModel):
    id: str


class ConversationHistoryResponse(BaseModel):
    """Conversation history response model."""

    session_id: str
    messages: list[ConversationEntry] = Field(default_factory=list)


class MemorySearchResponse(BaseModel):
    query: str
    results: list[ConversationEntry] = Field(default_factory=list)


class FolderPathRequest(BaseModel):
    """Request to register a folder path."""

    absolute_path: str = Field(..., min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class FolderPathListResponse(BaseModel):
    folders: list[FolderPath] = Field(default_factory=list)


class GenerateFileRequest(BaseModel):
    """Request to generate a downloadable file."""

    data: Any
    filename: str = Field(..., min_length=1, max_length=255)
    query_hash: Optional[str] = None
    file_type: FileType = FileType.JSON


class AddDocumentRequest(BaseModel):
    content: str = Field(..., min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class AddDocumentResponse(BaseModel):
    id: str


class DocumentSearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    limit: int = Field(default=5, ge=1, le=100)
    score_threshold: Optional[float] = Field(default=None, ge=-1.0, le=1.0)


class DocumentSearchResponse(BaseModel):
    results: list[DocumentSearchResult] = Field(default_factory=list)


class ContextRequest(BaseModel):
    query: str = Field(..., min_length=1)
    limit: int = Field(default=3, ge=1, le=50)


class ContextResponse(BaseModel):
    context: str


class MemoryResetRequest(BaseModel):
    """Request to reset all memory."""

    confirm_full_reset: bool = Field(
        description="Must be True to confirm full memory reset"
    )


class MemoryResetResponse(BaseModel):
    """Response for memory reset operation."""

    success: bool
    store_cleared: bool
    vectors_cleared: bool
    cache_cleared: bool
    error: str | None = None
