"""
Encrypted Store for Structured Memory.

- Single local SQLite database file (single process, single writer)
- Conversation turns, folder paths, generated downloadable files
- Encryption at repository boundary (content and metadata columns)
- Generated files expire after a fixed TTL; see retention.py
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Final
from uuid import uuid4

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from kr1_memory.errors import InitializationError, TransientIOError, ValidationError
from kr1_memory.memory.encryption import EncryptionError, EncryptionService
from kr1_memory.memory.keys import KeyManager
from kr1_memory.memory.retention import (
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    Clock,
    RetentionScheduler,
    system_clock_ms,
)
from kr1_memory.models import (
    ConversationEntry,
    ConversationRole,
    DownloadableFile,
    FileType,
    FolderPath,
    GeneratedFile,
    MemoryStats,
    coerce_metadata,
    dump_metadata,
    load_metadata,
)

logger = structlog.get_logger(__name__)

# Generated files live for 2 hours
DEFAULT_FILE_TTL_SECONDS: Final[int] = 2 * 60 * 60

KEY_CHECK_NAME: Final[str] = "key_check"
KEY_CHECK_PLAINTEXT: Final[str] = "kr1-memory-key-check"

SCHEMA_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS store_meta (
        name TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        session_id TEXT,
        role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
        content TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        metadata TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS folder_paths (
        id TEXT PRIMARY KEY,
        path_hash TEXT UNIQUE NOT NULL,
        absolute_path TEXT NOT NULL,
        total_files INTEGER DEFAULT 0,
        last_accessed INTEGER,
        metadata TEXT,
        created_at INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS generated_files (
        id TEXT PRIMARY KEY,
        filename TEXT NOT NULL,
        file_path TEXT NOT NULL,
        query_hash TEXT,
        expires_at INTEGER NOT NULL,
        file_type TEXT NOT NULL,
        size_bytes INTEGER DEFAULT 0,
        created_at INTEGER NOT NULL,
        CHECK (expires_at > created_at)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conversations_session ON conversations(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_conversations_timestamp ON conversations(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_folder_paths_path ON folder_paths(path_hash)",
    "CREATE INDEX IF NOT EXISTS idx_generated_files_expires ON generated_files(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_generated_files_hash ON generated_files(query_hash)",
)

CONVERSATION_COLUMNS: Final[str] = "id, session_id, role, content, timestamp, metadata"
GENERATED_FILE_COLUMNS: Final[str] = (
    "id, filename, file_path, query_hash, expires_at, file_type, size_bytes, created_at"
)


def to_csv(data: Any) -> str:
    """
    Convert a list of records to CSV.

    Headers come from the first record; string values are quoted.
    """
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        return "No data available"

    headers = list(data[0].keys())
    lines = [",".join(headers)]

    for row in data:
        values: list[str] = []
        for header in headers:
            value = row.get(header) if isinstance(row, dict) else None
            if isinstance(value, str):
                values.append('"' + value.replace('"', '""') + '"')
            elif value is None:
                values.append("")
            elif isinstance(value, (dict, list, bool)):
                values.append(json.dumps(value))
            else:
                values.append(str(value))
        lines.append(",".join(values))

    return "\n".join(lines)


def serialize_file_content(data: Any, file_type: FileType) -> str:
    """Render data for a generated file."""
    if file_type == FileType.JSON:
        return json.dumps(data, indent=2, default=str)
    if file_type == FileType.CSV:
        return to_csv(data)
    return data if isinstance(data, str) else json.dumps(data, indent=2, default=str)


def parse_file_type(file_type: str | FileType) -> FileType:
    try:
        return FileType(str(getattr(file_type, "value", file_type)).lower())
    except ValueError:
        raise ValidationError(
            f"Unsupported file type '{file_type}'; expected one of "
            f"{', '.join(t.value for t in FileType)}"
        ) from None


class EncryptedMemoryStore:
    """
    Repository for structured memory in an encrypted local database.

    Used for:
    - Conversation turns (unbounded, disk-limited history)
    - Known folder paths (unique by absolute path)
    - Generated downloadable files with expiry

    Security:
    - Content, paths and metadata encrypted at the repository boundary
    - Key checked against the database on open

    Reads never raise on misses; they return empty results.
    """

    def __init__(
        self,
        database_path: Path,
        downloads_dir: Path,
        key_manager: KeyManager,
        clock: Clock = system_clock_ms,
        file_ttl_seconds: int = DEFAULT_FILE_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        """
        Initialize the encrypted store (no I/O until initialize()).

        Args:
            database_path: Database file location
            downloads_dir: Directory for generated files
            key_manager: Source of the store key
            clock: Epoch-millisecond clock
            file_ttl_seconds: Lifetime of generated files
            sweep_interval_seconds: Period of the expired-file sweep
        """
        self._database_path = database_path
        self._downloads_dir = downloads_dir
        self._key_manager = key_manager
        self._clock = clock
        self._file_ttl_ms = file_ttl_seconds * 1000

        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._encryption: EncryptionService | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._generate_lock = asyncio.Lock()

        self.scheduler = RetentionScheduler(
            self,
            clock=clock,
            sweep_interval_seconds=sweep_interval_seconds,
        )

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def downloads_dir(self) -> Path:
        return self._downloads_dir

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """
        Open or create the database, apply the key, and create the schema.

        Idempotent. Starts the expired-file sweep.

        Raises:
            InitializationError: If the key does not match an existing
                database or the file cannot be opened
        """
        async with self._init_lock:
            if self._initialized:
                return

            key = await self._key_manager.get_or_create_key()
            self._encryption = EncryptionService(key)

            try:
                await asyncio.to_thread(self._prepare_directories)
                self._engine = create_async_engine(
                    f"sqlite+aiosqlite:///{self._database_path}",
                    echo=False,
                )
                async with self._engine.begin() as conn:
                    for statement in SCHEMA_STATEMENTS:
                        await conn.execute(text(statement))
                    await self._verify_key(conn)
            except InitializationError:
                await self._dispose_engine()
                raise
            except (SQLAlchemyError, OSError) as e:
                await self._dispose_engine()
                logger.error("Failed to open memory database", error=str(e))
                raise InitializationError(f"Failed to open memory database: {e}") from e

            self._session_factory = async_sessionmaker(
                self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
            self.scheduler.start()
            self._initialized = True
            logger.info(
                "Encrypted memory store initialized",
                database=str(self._database_path),
                ephemeral_key=self._key_manager.is_ephemeral,
            )

    def _prepare_directories(self) -> None:
        self._database_path.parent.mkdir(parents=True, exist_ok=True)
        self._downloads_dir.mkdir(parents=True, exist_ok=True)

    async def _verify_key(self, conn: AsyncConnection) -> None:
        """Check the key against the stored canary, writing it on first open."""
        assert self._encryption is not None

        result = await conn.execute(
            text("SELECT value FROM store_meta WHERE name = :name"),
            {"name": KEY_CHECK_NAME},
        )
        row = result.fetchone()

        if row is None:
            await conn.execute(
                text("INSERT INTO store_meta (name, value) VALUES (:name, :value)"),
                {"name": KEY_CHECK_NAME, "value": self._encryption.encrypt(KEY_CHECK_PLAINTEXT)},
            )
            return

        try:
            matches = self._encryption.decrypt(row[0]) == KEY_CHECK_PLAINTEXT
        except EncryptionError:
            matches = False

        if not matches:
            logger.error(
                "Encryption key rejected by existing memory database",
                database=str(self._database_path),
                ephemeral_key=self._key_manager.is_ephemeral,
            )
            raise InitializationError(
                "Encryption key does not match the existing memory database"
            )

    async def _dispose_engine(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    async def close(self) -> None:
        """Cancel scheduled deletions, then release the database handle."""
        await self.scheduler.stop()
        await self._dispose_engine()
        self._session_factory = None
        self._initialized = False
        logger.info("Encrypted memory store closed")

    def _session(self) -> AsyncSession:
        assert self._session_factory is not None
        return self._session_factory()

    @property
    def _crypto(self) -> EncryptionService:
        assert self._encryption is not None
        return self._encryption

    # =========================================================================
    # Conversations
    # =========================================================================

    async def store_conversation(
        self,
        session_id: str | None,
        role: ConversationRole | str,
        content: str,
        metadata: Any = None,
    ) -> str:
        """
        Persist a conversation turn.

        Args:
            session_id: Owning session (may be None)
            role: user, assistant or system
            content: Message text (encrypted at rest)
            metadata: Typed metadata or a plain dict

        Returns:
            New entry ID

        Raises:
            ValidationError: If role is not a known role
            TransientIOError: If the write fails
        """
        try:
            typed_role = ConversationRole(getattr(role, "value", role))
        except ValueError:
            raise ValidationError(f"Invalid conversation role '{role}'") from None

        await self._ensure_initialized()

        entry_id = str(uuid4())
        try:
            async with self._session() as session:
                await session.execute(
                    text("""
                        INSERT INTO conversations (id, session_id, role, content, timestamp, metadata)
                        VALUES (:id, :session_id, :role, :content, :timestamp, :metadata)
                    """),
                    {
                        "id": entry_id,
                        "session_id": session_id,
                        "role": typed_role.value,
                        "content": self._crypto.encrypt(content),
                        "timestamp": self._clock(),
                        "metadata": self._crypto.encrypt(dump_metadata(coerce_metadata(metadata))),
                    },
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to store conversation", session_id=session_id, error=str(e))
            raise TransientIOError(f"Failed to store conversation: {e}") from e

        logger.debug(
            "Conversation stored",
            entry_id=entry_id,
            session_id=session_id,
            role=typed_role.value,
            content_length=len(content),
        )
        return entry_id

    def _row_to_entry(self, row: Any) -> ConversationEntry:
        return ConversationEntry(
            id=row[0],
            session_id=row[1],
            role=ConversationRole(row[2]),
            content=self._crypto.decrypt(row[3]),
            timestamp_ms=row[4],
            metadata=load_metadata(self._crypto.decrypt(row[5]) if row[5] else None),
        )

    def _rows_to_entries(self, rows: list[Any]) -> list[ConversationEntry]:
        entries: list[ConversationEntry] = []
        for row in rows:
            try:
                entries.append(self._row_to_entry(row))
            except EncryptionError as e:
                logger.warning("Failed to decrypt conversation", entry_id=row[0], error=str(e))
        return entries

    async def load_conversation_history(
        self,
        session_id: str,
        limit: int = 1000,
    ) -> list[ConversationEntry]:
        """
        Load a session's turns, oldest first.

        Args:
            session_id: Session identifier
            limit: Maximum entries

        Returns:
            Entries in timestamp order; empty for unknown sessions
        """
        await self._ensure_initialized()

        try:
            async with self._session() as session:
                result = await session.execute(
                    text(f"""
                        SELECT {CONVERSATION_COLUMNS}
                        FROM conversations
                        WHERE session_id = :session_id
                        ORDER BY timestamp ASC, rowid ASC
                        LIMIT :limit
                    """),
                    {"session_id": session_id, "limit": limit},
                )
                rows = result.fetchall()
        except SQLAlchemyError as e:
            logger.warning("Failed to load conversation history", session_id=session_id, error=str(e))
            return []

        return self._rows_to_entries(rows)

    async def load_recent_history(self, session_id: str, limit: int = 10) -> list[ConversationEntry]:
        """The newest turns of a session, returned oldest first."""
        await self._ensure_initialized()

        try:
            async with self._session() as session:
                result = await session.execute(
                    text(f"""
                        SELECT {CONVERSATION_COLUMNS}
                        FROM conversations
                        WHERE session_id = :session_id
                        ORDER BY timestamp DESC, rowid DESC
                        LIMIT :limit
                    """),
                    {"session_id": session_id, "limit": limit},
                )
                rows = result.fetchall()
        except SQLAlchemyError as e:
            logger.warning("Failed to load recent history", session_id=session_id, error=str(e))
            return []

        return list(reversed(self._rows_to_entries(rows)))

    async def load_all_memory(self, limit: int = 10000) -> list[ConversationEntry]:
        """Load turns across all sessions, newest first."""
        await self._ensure_initialized()

        try:
            async with self._session() as session:
                result = await session.execute(
                    text(f"""
                        SELECT {CONVERSATION_COLUMNS}
                        FROM conversations
                        ORDER BY timestamp DESC, rowid DESC
                        LIMIT :limit
                    """),
                    {"limit": limit},
                )
                rows = result.fetchall()
        except SQLAlchemyError as e:
            logger.warning("Failed to load memory", error=str(e))
            return []

        return self._rows_to_entries(rows)

    async def search_memory(self, query: str, limit: int = 100) -> list[ConversationEntry]:
        """
        Case-insensitive substring search over conversation content.

        A lexical scan, not full-text search: content is encrypted, so rows
        are decrypted and matched in memory, newest first.

        Args:
            query: Substring to look for
            limit: Maximum matches

        Returns:
            Matching entries, most recent first
        """
        await self._ensure_initialized()

        needle = query.casefold()
        matches: list[ConversationEntry] = []

        try:
            async with self._session() as session:
                result = await session.execute(
                    text(f"""
                        SELECT {CONVERSATION_COLUMNS}
                        FROM conversations
                        ORDER BY timestamp DESC, rowid DESC
                    """)
                )
                rows = result.fetchall()
        except SQLAlchemyError as e:
            logger.warning("Memory search failed", error=str(e))
            return []

        for row in rows:
            try:
                entry = self._row_to_entry(row)
            except EncryptionError as e:
                logger.warning("Failed to decrypt conversation", entry_id=row[0], error=str(e))
                continue
            if needle in entry.content.casefold():
                matches.append(entry)
                if len(matches) >= limit:
                    break

        logger.debug("Memory searched", matches=len(matches))
        return matches

    async def delete_session(self, session_id: str) -> int:
        """
        Delete every turn of a session.

        Returns:
            Number of entries removed
        """
        await self._ensure_initialized()

        try:
            async with self._session() as session:
                result = await session.execute(
                    text("DELETE FROM conversations WHERE session_id = :session_id"),
                    {"session_id": session_id},
                )
                await session.commit()
                deleted = result.rowcount or 0  # type: ignore
        except SQLAlchemyError as e:
            logger.warning("Failed to delete session", session_id=session_id, error=str(e))
            return 0

        logger.info("Session deleted", session_id=session_id, entries=deleted)
        return deleted

    # =========================================================================
    # Folder Paths
    # =========================================================================

    async def add_folder_path(self, absolute_path: str, metadata: Any = None) -> str:
        """
        Register a folder path, refreshing it if already known.

        Args:
            absolute_path: Absolute folder path (unique)
            metadata: Typed metadata or a plain dict

        Returns:
            ID of the (possibly pre-existing) row

        Raises:
            ValidationError: If the path is empty
            TransientIOError: If the write fails
        """
        if not absolute_path:
            raise ValidationError("Folder path must not be empty")

        await self._ensure_initialized()

        path_hash = self._crypto.hash_for_index(absolute_path)
        now_ms = self._clock()

        try:
            async with self._session() as session:
                await session.execute(
                    text("""
                        INSERT INTO folder_paths
                            (id, path_hash, absolute_path, total_files, last_accessed, metadata, created_at)
                        VALUES
                            (:id, :path_hash, :absolute_path, 0, :last_accessed, :metadata, :created_at)
                        ON CONFLICT (path_hash) DO UPDATE SET
                            last_accessed = excluded.last_accessed,
                            metadata = excluded.metadata
                    """),
                    {
                        "id": str(uuid4()),
                        "path_hash": path_hash,
                        "absolute_path": self._crypto.encrypt(absolute_path),
                        "last_accessed": now_ms,
                        "metadata": self._crypto.encrypt(dump_metadata(coerce_metadata(metadata))),
                        "created_at": now_ms,
                    },
                )
                result = await session.execute(
                    text("SELECT id FROM folder_paths WHERE path_hash = :path_hash"),
                    {"path_hash": path_hash},
                )
                folder_id = result.scalar_one()
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to add folder path", error=str(e))
            raise TransientIOError(f"Failed to add folder path: {e}") from e

        logger.debug("Folder path recorded", folder_id=folder_id)
        return folder_id

    async def get_folder_paths(self) -> list[FolderPath]:
        """List known folders, most recently accessed first."""
        await self._ensure_initialized()

        try:
            async with self._session() as session:
                result = await session.execute(
                    text("""
                        SELECT id, absolute_path, total_files, last_accessed, metadata, created_at
                        FROM folder_paths
                        ORDER BY last_accessed DESC
                    """)
                )
                rows = result.fetchall()
        except SQLAlchemyError as e:
            logger.warning("Failed to list folder paths", error=str(e))
            return []

        folders: list[FolderPath] = []
        for row in rows:
            try:
                folders.append(
                    FolderPath(
                        id=row[0],
                        absolute_path=self._crypto.decrypt(row[1]),
                        total_files=row[2] or 0,
                        last_accessed_ms=row[3] or 0,
                        metadata=load_metadata(self._crypto.decrypt(row[4]) if row[4] else None),
                        created_at_ms=row[5],
                    )
                )
            except EncryptionError as e:
                logger.warning("Failed to decrypt folder path", folder_id=row[0], error=str(e))
        return folders

    async def update_folder_file_count(self, absolute_path: str, file_count: int) -> bool:
        """Set a folder's file count and touch its access time."""
        await self._ensure_initialized()

        try:
            async with self._session() as session:
                result = await session.execute(
                    text("""
                        UPDATE folder_paths
                        SET total_files = :total_files, last_accessed = :last_accessed
                        WHERE path_hash = :path_hash
                    """),
                    {
                        "total_files": max(file_count, 0),
                        "last_accessed": self._clock(),
                        "path_hash": self._crypto.hash_for_index(absolute_path),
                    },
                )
                await session.commit()
                return (result.rowcount or 0) > 0  # type: ignore
        except SQLAlchemyError as e:
            logger.warning("Failed to update folder file count", error=str(e))
            return False

    async def delete_folder_path(self, absolute_path: str) -> bool:
        """Forget a folder path."""
        await self._ensure_initialized()

        try:
            async with self._session() as session:
                result = await session.execute(
                    text("DELETE FROM folder_paths WHERE path_hash = :path_hash"),
                    {"path_hash": self._crypto.hash_for_index(absolute_path)},
                )
                await session.commit()
                return (result.rowcount or 0) > 0  # type: ignore
        except SQLAlchemyError as e:
            logger.warning("Failed to delete folder path", error=str(e))
            return False

    # =========================================================================
    # Generated Files
    # =========================================================================

    async def generate_downloadable_file(
        self,
        data: Any,
        filename: str,
        query_hash: str | None = None,
        file_type: FileType | str = FileType.JSON,
    ) -> DownloadableFile:
        """
        Write a downloadable file that expires after the TTL.

        A live file with the same query hash is returned as-is instead of
        writing a new one.

        Args:
            data: Payload to serialize
            filename: Original file name
            query_hash: Optional dedup key
            file_type: json, csv or txt

        Returns:
            Descriptor for the download consumer

        Raises:
            ValidationError: If the file type or name is invalid
            TransientIOError: If writing the file or the row fails
        """
        typed_file_type = parse_file_type(file_type)
        safe_name = Path(filename).name
        if not safe_name:
            raise ValidationError("Filename must not be empty")

        await self._ensure_initialized()

        async with self._generate_lock:
            if query_hash:
                try:
                    existing = await self._find_live_by_query_hash(query_hash)
                except SQLAlchemyError as e:
                    raise TransientIOError(f"Failed to check for duplicate file: {e}") from e
                if existing is not None:
                    logger.debug("Duplicate file request", file_id=existing.id)
                    return DownloadableFile(
                        id=existing.id,
                        file_path=existing.file_path,
                        filename=existing.filename,
                        expires_at_ms=existing.expires_at_ms,
                        is_duplicate=True,
                    )

            content = serialize_file_content(data, typed_file_type)
            created_at_ms = self._clock()
            expires_at_ms = created_at_ms + self._file_ttl_ms
            file_id = str(uuid4())
            size_bytes = len(content.encode("utf-8"))

            try:
                file_path = await asyncio.to_thread(
                    self._write_new_file, created_at_ms, safe_name, content
                )
            except OSError as e:
                logger.error("Failed to write generated file", error=str(e))
                raise TransientIOError(f"Failed to write generated file: {e}") from e

            unique_filename = file_path.name
            try:
                async with self._session() as session:
                    await session.execute(
                        text(f"""
                            INSERT INTO generated_files ({GENERATED_FILE_COLUMNS})
                            VALUES (:id, :filename, :file_path, :query_hash, :expires_at,
                                    :file_type, :size_bytes, :created_at)
                        """),
                        {
                            "id": file_id,
                            "filename": unique_filename,
                            "file_path": str(file_path),
                            "query_hash": query_hash,
                            "expires_at": expires_at_ms,
                            "file_type": typed_file_type.value,
                            "size_bytes": size_bytes,
                            "created_at": created_at_ms,
                        },
                    )
                    await session.commit()
            except SQLAlchemyError as e:
                await asyncio.to_thread(file_path.unlink, missing_ok=True)
                logger.error("Failed to record generated file", error=str(e))
                raise TransientIOError(f"Failed to record generated file: {e}") from e

        self.scheduler.schedule(file_id, str(file_path), expires_at_ms)

        logger.info(
            "Generated file created",
            file_id=file_id,
            file_type=typed_file_type.value,
            size_bytes=size_bytes,
        )
        return DownloadableFile(
            id=file_id,
            file_path=str(file_path),
            filename=unique_filename,
            expires_at_ms=expires_at_ms,
            is_duplicate=False,
        )

    def _write_new_file(self, created_at_ms: int, safe_name: str, content: str) -> Path:
        """
        Write content under a name no other generated file holds.

        Names are ``{created_at_ms}_{name}``, with a counter added when that
        name is already taken on disk.
        """
        self._downloads_dir.mkdir(parents=True, exist_ok=True)
        attempt = 0
        while True:
            prefix = f"{created_at_ms}_{attempt}" if attempt else str(created_at_ms)
            file_path = self._downloads_dir / f"{prefix}_{safe_name}"
            try:
                with open(file_path, "x", encoding="utf-8") as f:
                    f.write(content)
                return file_path
            except FileExistsError:
                attempt += 1

    def _row_to_generated_file(self, row: Any) -> GeneratedFile:
        return GeneratedFile(
            id=row[0],
            filename=row[1],
            file_path=row[2],
            query_hash=row[3],
            expires_at_ms=row[4],
            file_type=FileType(row[5]),
            size_bytes=row[6] or 0,
            created_at_ms=row[7],
        )

    async def _find_live_by_query_hash(self, query_hash: str) -> GeneratedFile | None:
        async with self._session() as session:
            result = await session.execute(
                text(f"""
                    SELECT {GENERATED_FILE_COLUMNS}
                    FROM generated_files
                    WHERE query_hash = :query_hash AND expires_at > :now
                    ORDER BY created_at ASC
                    LIMIT 1
                """),
                {"query_hash": query_hash, "now": self._clock()},
            )
            row = result.fetchone()
        return self._row_to_generated_file(row) if row is not None else None

    async def get_generated_file(self, file_id: str) -> GeneratedFile | None:
        """Get a generated file row; None once deleted."""
        await self._ensure_initialized()

        try:
            async with self._session() as session:
                result = await session.execute(
                    text(f"SELECT {GENERATED_FILE_COLUMNS} FROM generated_files WHERE id = :id"),
                    {"id": file_id},
                )
                row = result.fetchone()
        except SQLAlchemyError as e:
            logger.warning("Failed to read generated file", file_id=file_id, error=str(e))
            return None

        return self._row_to_generated_file(row) if row is not None else None

    async def list_generated_files(self) -> list[GeneratedFile]:
        """List all generated file rows, soonest expiry first."""
        await self._ensure_initialized()

        try:
            async with self._session() as session:
                result = await session.execute(
                    text(f"SELECT {GENERATED_FILE_COLUMNS} FROM generated_files ORDER BY expires_at ASC")
                )
                rows = result.fetchall()
        except SQLAlchemyError as e:
            logger.warning("Failed to list generated files", error=str(e))
            return []

        return [self._row_to_generated_file(row) for row in rows]

    async def list_expired_files(self, now_ms: int) -> list[GeneratedFile]:
        """Rows whose expiry is at or before now_ms."""
        await self._ensure_initialized()

        async with self._session() as session:
            result = await session.execute(
                text(f"""
                    SELECT {GENERATED_FILE_COLUMNS}
                    FROM generated_files
                    WHERE expires_at <= :now
                    ORDER BY expires_at ASC
                """),
                {"now": now_ms},
            )
            rows = result.fetchall()

        return [self._row_to_generated_file(row) for row in rows]

    async def delete_expired_file(self, file_id: str, file_path: str) -> bool:
        """
        Remove a generated file from disk and its row from the store.

        Idempotent: a file or row that is already gone is not an error.

        Returns:
            True once both are gone, False if deletion failed
        """
        if self._session_factory is None:
            return False

        try:
            await asyncio.to_thread(Path(file_path).unlink, missing_ok=True)
        except OSError as e:
            logger.warning("Failed to remove expired file from disk", file_id=file_id, error=str(e))
            return False

        try:
            async with self._session() as session:
                await session.execute(
                    text("DELETE FROM generated_files WHERE id = :id"),
                    {"id": file_id},
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning("Failed to delete expired file row", file_id=file_id, error=str(e))
            return False

        logger.info("Expired file deleted", file_id=file_id)
        return True

    # =========================================================================
    # Stats & Bulk Operations
    # =========================================================================

    async def get_memory_stats(self) -> MemoryStats:
        """Count conversations, folders and live generated files."""
        await self._ensure_initialized()

        try:
            async with self._session() as session:
                conversations = await session.execute(text("SELECT COUNT(*) FROM conversations"))
                folders = await session.execute(text("SELECT COUNT(*) FROM folder_paths"))
                files = await session.execute(
                    text("SELECT COUNT(*) FROM generated_files WHERE expires_at > :now"),
                    {"now": self._clock()},
                )
                return MemoryStats(
                    total_conversations=conversations.scalar() or 0,
                    total_folder_paths=folders.scalar() or 0,
                    active_generated_files=files.scalar() or 0,
                    is_encrypted=True,
                    is_ephemeral_key=self._key_manager.is_ephemeral,
                )
        except SQLAlchemyError as e:
            logger.warning("Failed to read memory stats", error=str(e))
            return MemoryStats(is_ephemeral_key=self._key_manager.is_ephemeral)

    async def clear_all_memory(self) -> bool:
        """
        Delete all conversations, folders and generated files.

        Pending deletion timers are cancelled first.

        Returns:
            True if cleared
        """
        await self._ensure_initialized()
        self.scheduler.cancel_pending()

        generated = await self.list_generated_files()
        for item in generated:
            try:
                await asyncio.to_thread(Path(item.file_path).unlink, missing_ok=True)
            except OSError as e:
                logger.warning("Failed to delete generated file", file_id=item.id, error=str(e))

        async with self._session() as session:
            try:
                await session.execute(text("DELETE FROM conversations"))
                await session.execute(text("DELETE FROM folder_paths"))
                await session.execute(text("DELETE FROM generated_files"))
                await session.commit()
            except SQLAlchemyError as e:
                logger.error("Failed to clear memory store", error=str(e))
                await session.rollback()
                return False

        logger.info("All memory cleared", generated_files=len(generated))
        return True

    async def health_check(self) -> bool:
        """
        Check database connection health.

        Returns:
            True if healthy
        """
        if not self._initialized:
            return False
        try:
            async with self._session() as session:
                await session.execute(text("SELECT 1"))
                return True
        except SQLAlchemyError as e:
            logger.error("Memory store health check failed", error=str(e))
            return False
