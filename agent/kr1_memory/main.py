"""
FastAPI application entry point for the KR1 memory runtime.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kr1_memory.api import memory_error_handler, set_memory_manager
from kr1_memory.api.routes import router as api_router
from kr1_memory.config import settings
from kr1_memory.errors import MemoryLayerError
from kr1_memory.logging_config import configure_logging
from kr1_memory.memory import MemoryManager, create_memory_manager
from kr1_memory.models import HealthResponse

configure_logging(debug=settings.debug, log_level=settings.log_level)

logger = structlog.get_logger(__name__)

# Track uptime and memory manager
_start_time: float = 0
_memory_manager: MemoryManager | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    global _start_time, _memory_manager
    _start_time = asyncio.get_running_loop().time()

    logger.info("Starting KR1 memory runtime", version=settings.version)

    try:
        _memory_manager = await create_memory_manager(settings)
        await _memory_manager.initialize()
        set_memory_manager(_memory_manager)

        health = await _memory_manager.health_check()
        logger.info(
            "Memory services initialized",
            store=health.get("store", False),
            vectors=health.get("vectors", False),
            vector_backend=health.get("vector_backend"),
            ephemeral_key=health.get("ephemeral_key", False),
        )
    except MemoryLayerError as e:
        # Memory routes answer 503 until restarted with a usable store
        logger.error("Memory services initialization failed", error=str(e))
        if _memory_manager is not None:
            await _memory_manager.close()
            _memory_manager = None

    yield

    logger.info("Shutting down KR1 memory runtime")
    set_memory_manager(None)
    if _memory_manager is not None:
        await _memory_manager.close()
        _memory_manager = None


# Create FastAPI application
app = FastAPI(
    title="KR1 Memory Runtime",
    description="Local-first encrypted memory layer for the KR1 desktop assistant",
    version=settings.version,
    lifespan=lifespan,
)

# Configure CORS for the local desktop shell
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:1420",
        "tauri://localhost",
        "https://tauri.localhost",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(MemoryLayerError, memory_error_handler)


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    current_time = asyncio.get_running_loop().time()
    uptime = current_time - _start_time if _start_time > 0 else 0

    return HealthResponse(
        status="healthy",
        version=settings.version,
        uptime=uptime,
    )


# Include API routes
app.include_router(api_router, prefix="/api/v1")


def run() -> None:
    """Run the server."""
    uvicorn.run(
        "kr1_memory.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    run()
