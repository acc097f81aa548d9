"""
Memory subsystem for the KR1 memory runtime.

- Local-only, single-user, single process
- Encryption at rest
- Expiring generated files
- Semantic recall with an in-process fallback
"""

from kr1_memory.memory.encryption import (
    EncryptionError,
    EncryptionService,
)
from kr1_memory.memory.keys import (
    FileSecretStore,
    InMemorySecretStore,
    KeyManager,
    SecretNotFoundError,
    SecretStore,
)
from kr1_memory.memory.retention import (
    RetentionScheduler,
    system_clock_ms,
)
from kr1_memory.memory.store import (
    EncryptedMemoryStore,
)
from kr1_memory.memory.embeddings import (
    EmbeddingFunction,
    create_fallback_embedding_function,
    create_openai_embedding_function,
)
from kr1_memory.memory.vector_backends import (
    InMemoryVectorBackend,
    QdrantVectorBackend,
    VectorBackend,
)
from kr1_memory.memory.vector_service import (
    VectorMemoryService,
)
from kr1_memory.memory.context import (
    ContextAssembler,
    ContextEnricher,
    ResponseCache,
)
from kr1_memory.memory.pipeline import (
    CancellationToken,
    ChatModel,
    ConversationPipeline,
)
from kr1_memory.memory.manager import (
    MemoryManager,
    create_memory_manager,
)

__all__ = [
    # Encryption
    "EncryptionError",
    "EncryptionService",
    # Keys
    "FileSecretStore",
    "InMemorySecretStore",
    "KeyManager",
    "SecretNotFoundError",
    "SecretStore",
    # Retention
    "RetentionScheduler",
    "system_clock_ms",
    # Store
    "EncryptedMemoryStore",
    # Embeddings
    "EmbeddingFunction",
    "create_fallback_embedding_function",
    "create_openai_embedding_function",
    # Vector memory
    "InMemoryVectorBackend",
    "QdrantVectorBackend",
    "VectorBackend",
    "VectorMemoryService",
    # Context & pipeline
    "ContextAssembler",
    "ContextEnricher",
    "ResponseCache",
    "CancellationToken",
    "ChatModel",
    "ConversationPipeline",
    # Manager
    "MemoryManager",
    "create_memory_manager",
]
