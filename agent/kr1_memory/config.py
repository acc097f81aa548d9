"""
Configuration management for the KR1 memory runtime.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_data_dir() -> Path:
    """Get platform-appropriate app-data directory."""
    if os.name == "nt":  # Windows
        base = os.environ.get("APPDATA", os.path.expanduser("~"))
    else:  # Unix/Linux/macOS
        base = os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share"))

    return Path(base) / "kr1"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    version: str = "0.1.0"
    debug: bool = Field(default=False, alias="KR1_DEBUG")

    # Server
    host: str = Field(default="127.0.0.1", alias="KR1_HOST")
    port: int = Field(default=8742, alias="KR1_PORT")

    # Storage
    data_dir: Path = Field(default_factory=default_data_dir, alias="KR1_DATA_DIR")
    database_filename: str = Field(default="kr1_memory.db", alias="KR1_DATABASE_FILENAME")
    downloads_dirname: str = Field(default="downloads", alias="KR1_DOWNLOADS_DIRNAME")
    secret_name: str = Field(default="KR1_EncryptionKey", alias="KR1_SECRET_NAME")

    # Retention
    generated_file_ttl_seconds: int = Field(default=7200, ge=1, alias="KR1_FILE_TTL_SECONDS")
    sweep_interval_seconds: float = Field(default=1800.0, gt=0, alias="KR1_SWEEP_INTERVAL_SECONDS")

    # Vector memory
    qdrant_url: str = Field(default="http://localhost:6333", alias="QDRANT_URL")
    qdrant_collection: str = Field(default="kr_documents", alias="KR1_QDRANT_COLLECTION")
    vector_size: int = Field(default=384, ge=8, alias="KR1_VECTOR_SIZE")
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    embedding_model: str = Field(default="text-embedding-3-small", alias="KR1_EMBEDDING_MODEL")

    # Context assembly
    context_char_budget: int = Field(default=2000, ge=1, alias="KR1_CONTEXT_CHAR_BUDGET")
    context_limit: int = Field(default=3, ge=1, le=50, alias="KR1_CONTEXT_LIMIT")
    context_score_threshold: Optional[float] = Field(
        default=0.6, ge=-1.0, le=1.0, alias="KR1_CONTEXT_SCORE_THRESHOLD"
    )
    history_window: int = Field(default=10, ge=0, alias="KR1_HISTORY_WINDOW")

    # Response cache
    response_cache_size: int = Field(default=100, ge=1, alias="KR1_RESPONSE_CACHE_SIZE")
    response_cache_key_mode: Literal["hash", "prefix"] = Field(
        default="hash", alias="KR1_RESPONSE_CACHE_KEY_MODE"
    )
    response_cache_prefix_chars: int = Field(
        default=100, ge=1, alias="KR1_RESPONSE_CACHE_PREFIX_CHARS"
    )

    # Logging
    log_level: str = Field(default="info", alias="LOG_LEVEL")

    @property
    def database_path(self) -> Path:
        return self.data_dir / self.database_filename

    @property
    def downloads_dir(self) -> Path:
        return self.data_dir / self.downloads_dirname


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
