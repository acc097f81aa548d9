"""
API routes for the KR1 memory runtime.
"""

from fastapi import APIRouter

from kr1_memory.api.memory import router as memory_router

router = APIRouter()

# Include sub-routers
router.include_router(memory_router, tags=["memory"])
