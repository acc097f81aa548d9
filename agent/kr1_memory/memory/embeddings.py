"""
Embedding functions for vector memory.

Every vector leaving this module is L2-normalized, so cosine similarity
reduces to a dot product.
"""

import math
from typing import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)

# Type alias for embedding function
EmbeddingFunction = Callable[[str], Awaitable[list[float]]]


def normalize(vector: list[float]) -> list[float]:
    """Scale a vector to unit length; the zero vector is returned unchanged."""
    magnitude = math.sqrt(sum(v * v for v in vector))
    if magnitude == 0:
        return list(vector)
    return [v / magnitude for v in vector]


def dot(a: list[float], b: list[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine of the angle between two vectors (0.0 if either is zero)."""
    norm_a = math.sqrt(dot(a, a))
    norm_b = math.sqrt(dot(b, b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot(a, b) / (norm_a * norm_b)


def hashed_char_embedding(text: str, dimension: int) -> list[float]:
    """
    Character-frequency histogram folded into a fixed dimension.

    A weak, non-semantic approximation used only when no embedding model is
    reachable. Deterministic for a given text and dimension.
    """
    vector = [0.0] * dimension
    for char in text.lower():
        vector[ord(char) % dimension] += 1.0
    return normalize(vector)


def create_fallback_embedding_function(dimension: int) -> EmbeddingFunction:
    """Wrap the hashed character embedding as an async embedding function."""

    async def embed(text: str) -> list[float]:
        return hashed_char_embedding(text, dimension)

    return embed


def create_openai_embedding_function(
    api_key: str | None,
    model: str,
    dimension: int,
) -> EmbeddingFunction | None:
    """Create an embedding function using OpenAI if available."""
    if not api_key:
        logger.warning("No OpenAI API key - using fallback embeddings")
        return None

    try:
        from openai import APIConnectionError, APIError, AsyncOpenAI

        client = AsyncOpenAI(api_key=api_key)

        async def embed(text: str) -> list[float]:
            """Generate embedding for text using OpenAI."""
            try:
                response = await client.embeddings.create(
                    model=model,
                    input=text,
                    dimensions=dimension,
                )
                return normalize(response.data[0].embedding)
            except APIConnectionError as e:
                logger.warning("OpenAI API connection failed", error=str(e))
                raise
            except APIError as e:
                logger.warning("OpenAI API error", error=str(e))
                raise

        logger.info("OpenAI embedding function initialized", model=model, dimension=dimension)
        return embed
    except Exception as e:
        logger.warning("Failed to create embedding function", error=str(e))
        return None
