"""
Memory Domain Models for the KR1 memory runtime.

All memory objects are strictly typed Pydantic models.
Metadata is a tagged union of known shapes with an opaque-bytes fallback,
so no untyped dicts cross the store boundary.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError


# =============================================================================
# Enums
# =============================================================================


class ConversationRole(str, Enum):
    """Role of a stored conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class FileType(str, Enum):
    """Serialization formats for generated downloadable files."""

    JSON = "json"
    CSV = "csv"
    TXT = "txt"


# =============================================================================
# Metadata (tagged union)
# =============================================================================


class TurnMetadata(BaseModel):
    """Metadata attached to a chat turn."""

    kind: Literal["turn"] = "turn"
    attachments: list[str] = Field(default_factory=list)
    context_blocks: int = Field(default=0, ge=0)
    from_cache: bool = False
    stopped: bool = False


class SearchMetadata(BaseModel):
    """Metadata for a recorded search."""

    kind: Literal["search"] = "search"
    query: str
    result_count: int = Field(default=0, ge=0)


class FolderMetadata(BaseModel):
    """Metadata for a referenced folder."""

    kind: Literal["folder"] = "folder"
    source: str = "user_selection"
    added_at: datetime = Field(default_factory=datetime.utcnow)


class UploadMetadata(BaseModel):
    """Metadata for an uploaded file ingested into vector memory."""

    kind: Literal["upload"] = "upload"
    filename: str
    filetype: str = ""
    filesize: int = Field(default=0, ge=0)
    source: str = "upload"


class OpaqueMetadata(BaseModel):
    """Fallback for metadata with no known shape."""

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    kind: Literal["opaque"] = "opaque"
    data: bytes = b""


Metadata = Annotated[
    Union[TurnMetadata, SearchMetadata, FolderMetadata, UploadMetadata, OpaqueMetadata],
    Field(discriminator="kind"),
]

metadata_adapter: TypeAdapter[Metadata] = TypeAdapter(Metadata)


def coerce_metadata(value: Any) -> Metadata:
    """
    Turn caller-supplied metadata into a member of the tagged union.

    Known shapes pass through. A dict whose ``kind`` names a known shape is
    validated into it; anything else is kept as JSON bytes in OpaqueMetadata.
    """
    if isinstance(
        value, (TurnMetadata, SearchMetadata, FolderMetadata, UploadMetadata, OpaqueMetadata)
    ):
        return value
    if value is None:
        return OpaqueMetadata()
    if isinstance(value, bytes):
        return OpaqueMetadata(data=value)
    if isinstance(value, dict) and value.get("kind") not in (None, "opaque"):
        try:
            return metadata_adapter.validate_python(value)
        except PydanticValidationError:
            pass
    return OpaqueMetadata(data=json.dumps(value, default=str, sort_keys=True).encode("utf-8"))


def dump_metadata(metadata: Metadata) -> str:
    """Serialize metadata to JSON for storage."""
    return metadata_adapter.dump_json(metadata).decode("utf-8")


def load_metadata(raw: str | None) -> Metadata:
    """Parse stored metadata JSON; unreadable blobs degrade to opaque bytes."""
    if not raw:
        return OpaqueMetadata()
    try:
        return metadata_adapter.validate_json(raw)
    except PydanticValidationError:
        return OpaqueMetadata(data=raw.encode("utf-8"))


# =============================================================================
# Encrypted Store Models
# =============================================================================


class ConversationEntry(BaseModel):
    """A single persisted conversation turn."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str | None = None
    role: ConversationRole
    content: str
    timestamp_ms: int = Field(ge=0)
    metadata: Metadata = Field(default_factory=OpaqueMetadata)


class FolderPath(BaseModel):
    """A folder the user referenced; unique by absolute path."""

    id: str
    absolute_path: str
    total_files: int = Field(default=0, ge=0)
    last_accessed_ms: int = Field(ge=0)
    metadata: Metadata = Field(default_factory=OpaqueMetadata)
    created_at_ms: int | None = None


class GeneratedFile(BaseModel):
    """Row describing a generated downloadable file with an expiry."""

    id: str
    filename: str
    file_path: str
    query_hash: str | None = None
    expires_at_ms: int
    file_type: FileType
    size_bytes: int = Field(default=0, ge=0)
    created_at_ms: int


class DownloadableFile(BaseModel):
    """Descriptor handed to the download consumer."""

    id: str
    file_path: str
    filename: str
    expires_at_ms: int
    is_duplicate: bool = False


class MemoryStats(BaseModel):
    """Counts reported by the encrypted store."""

    total_conversations: int = 0
    total_folder_paths: int = 0
    active_generated_files: int = 0
    is_encrypted: bool = True
    is_ephemeral_key: bool = False


# =============================================================================
# Vector Memory Models
# =============================================================================


class Document(BaseModel):
    """Embedded document held by the vector memory service."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    content: str
    embedding: list[float] = Field(min_length=1)
    metadata: Metadata = Field(default_factory=OpaqueMetadata)
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class DocumentSearchResult(BaseModel):
    """Result from similarity search."""

    id: str
    score: float
    content: str
    metadata: Metadata = Field(default_factory=OpaqueMetadata)
    timestamp: datetime | None = None


class UploadedFile(BaseModel):
    """A user-attached file, already read into text by the host."""

    name: str = Field(min_length=1)
    type: str = ""
    size: int = Field(default=0, ge=0)
    content: str = ""


class FileProcessingStatus(BaseModel):
    """Per-file outcome of ingesting uploads into vector memory."""

    filename: str
    status: Literal["processed", "error"]
    id: str | None = None
    error: str | None = None


class CollectionInfo(BaseModel):
    """Diagnostics for the active vector collection."""

    name: str
    points_count: int = 0
    status: str = "green"
    backend: str = ""


# =============================================================================
# Vector Backend Models
# =============================================================================


class VectorPoint(BaseModel):
    """Point written to a vector backend."""

    id: str
    vector: list[float]
    payload: dict[str, Any] = Field(default_factory=dict)


class ScoredPoint(BaseModel):
    """Point returned from a vector backend search."""

    id: str
    score: float
    payload: dict[str, Any] = Field(default_factory=dict)
