"""
KR1 Memory Runtime

Local-first encrypted memory layer for the KR1 desktop assistant.
"""

__version__ = "0.1.0"

from kr1_memory.config import settings
from kr1_memory.memory import (
    ConversationPipeline,
    EncryptedMemoryStore,
    KeyManager,
    MemoryManager,
    VectorMemoryService,
    create_memory_manager,
)

__all__ = [
    # Configuration
    "settings",
    # Memory
    "ConversationPipeline",
    "EncryptedMemoryStore",
    "KeyManager",
    "MemoryManager",
    "VectorMemoryService",
    "create_memory_manager",
]
