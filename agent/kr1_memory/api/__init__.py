"""
API routes module.
"""

from kr1_memory.api.memory import memory_error_handler, set_memory_manager
from kr1_memory.api.routes import router

__all__ = ["router", "memory_error_handler", "set_memory_manager"]
