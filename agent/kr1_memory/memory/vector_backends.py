"""
Vector backends for document memory.

One interface, two implementations:
- QdrantVectorBackend: local Qdrant instance over its async client
- InMemoryVectorBackend: in-process fallback with the same contract

The vector memory service picks one at startup and keeps it.
"""

from abc import ABC, abstractmethod
from typing import Final

import structlog
from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    Filter,
    FilterSelector,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from kr1_memory.errors import VectorMemoryError
from kr1_memory.memory.embeddings import cosine_similarity
from kr1_memory.models import CollectionInfo, ScoredPoint, VectorPoint

logger = structlog.get_logger(__name__)

COSINE: Final[str] = "cosine"


class VectorBackend(ABC):
    """Operations every vector backend provides."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Short backend name for diagnostics."""
        ...

    @abstractmethod
    async def list_collections(self) -> list[str]:
        ...

    @abstractmethod
    async def create_collection(self, name: str, dimension: int, metric: str = COSINE) -> None:
        ...

    @abstractmethod
    async def upsert(self, collection: str, points: list[VectorPoint]) -> None:
        ...

    @abstractmethod
    async def search(
        self,
        collection: str,
        vector: list[float],
        limit: int,
        score_threshold: float | None = None,
    ) -> list[ScoredPoint]:
        """Return up to limit points by descending similarity, at/above threshold."""
        ...

    @abstractmethod
    async def delete(self, collection: str, ids: list[str] | None = None) -> None:
        """Delete the given points, or every point when ids is None."""
        ...

    @abstractmethod
    async def get_collection_info(self, collection: str) -> CollectionInfo:
        ...

    async def close(self) -> None:
        """Release backend resources."""
        return None


class InMemoryVectorBackend(VectorBackend):
    """
    Process-local vector store.

    Points keep insertion order, so equal scores rank by insertion.
    Contents are lost when the process exits.
    """

    def __init__(self) -> None:
        self._dimensions: dict[str, int] = {}
        self._points: dict[str, dict[str, VectorPoint]] = {}

    @property
    def name(self) -> str:
        return "in_memory"

    def _collection(self, collection: str) -> dict[str, VectorPoint]:
        try:
            return self._points[collection]
        except KeyError:
            raise VectorMemoryError(f"Collection '{collection}' does not exist") from None

    async def list_collections(self) -> list[str]:
        return list(self._points)

    async def create_collection(self, name: str, dimension: int, metric: str = COSINE) -> None:
        if metric != COSINE:
            raise VectorMemoryError(f"Unsupported metric '{metric}'")
        if name in self._points:
            return
        self._dimensions[name] = dimension
        self._points[name] = {}
        logger.debug("In-memory collection created", collection=name, dimension=dimension)

    async def upsert(self, collection: str, points: list[VectorPoint]) -> None:
        stored = self._collection(collection)
        dimension = self._dimensions[collection]
        for point in points:
            if len(point.vector) != dimension:
                raise VectorMemoryError(
                    f"Vector dimension {len(point.vector)} does not match collection dimension {dimension}"
                )
            stored[point.id] = point

    async def search(
        self,
        collection: str,
        vector: list[float],
        limit: int,
        score_threshold: float | None = None,
    ) -> list[ScoredPoint]:
        scored = [
            ScoredPoint(
                id=point.id,
                score=cosine_similarity(vector, point.vector),
                payload=dict(point.payload),
            )
            for point in self._collection(collection).values()
        ]
        if score_threshold is not None:
            scored = [s for s in scored if s.score >= score_threshold]

        # sorted() is stable, ties keep insertion order
        scored = sorted(scored, key=lambda s: s.score, reverse=True)
        return scored[:max(limit, 0)]

    async def delete(self, collection: str, ids: list[str] | None = None) -> None:
        stored = self._collection(collection)
        if ids is None:
            stored.clear()
            return
        for point_id in ids:
            stored.pop(point_id, None)

    async def get_collection_info(self, collection: str) -> CollectionInfo:
        return CollectionInfo(
            name=collection,
            points_count=len(self._collection(collection)),
            status="green",
            backend=self.name,
        )


class QdrantVectorBackend(VectorBackend):
    """
    Vector backend over a local Qdrant instance.

    Used for:
    - Uploaded file contents
    - Documents added for recall
    """

    def __init__(self, client: AsyncQdrantClient) -> None:
        """
        Initialize Qdrant backend.

        Args:
            client: Async Qdrant client
        """
        self._client = client

    @classmethod
    def from_url(cls, url: str, timeout: int = 5) -> "QdrantVectorBackend":
        return cls(AsyncQdrantClient(url=url, timeout=timeout))

    @property
    def name(self) -> str:
        return "qdrant"

    async def list_collections(self) -> list[str]:
        collections = await self._client.get_collections()
        return [c.name for c in collections.collections]

    async def create_collection(self, name: str, dimension: int, metric: str = COSINE) -> None:
        if metric != COSINE:
            raise VectorMemoryError(f"Unsupported metric '{metric}'")
        await self._client.create_collection(
            collection_name=name,
            vectors_config=VectorParams(size=dimension, distance=Distance.COSINE),
        )
        logger.info("Created Qdrant collection", collection=name, dimension=dimension)

    async def upsert(self, collection: str, points: list[VectorPoint]) -> None:
        await self._client.upsert(
            collection_name=collection,
            points=[
                PointStruct(id=point.id, vector=point.vector, payload=point.payload)
                for point in points
            ],
            wait=True,
        )

    async def search(
        self,
        collection: str,
        vector: list[float],
        limit: int,
        score_threshold: float | None = None,
    ) -> list[ScoredPoint]:
        # query_points replaces the deprecated search() in qdrant-client
        response = await self._client.query_points(
            collection_name=collection,
            query=vector,
            limit=limit,
            score_threshold=score_threshold,
            with_payload=True,
        )
        return [
            ScoredPoint(id=str(point.id), score=point.score, payload=point.payload or {})
            for point in response.points
        ]

    async def delete(self, collection: str, ids: list[str] | None = None) -> None:
        if ids is None:
            selector = FilterSelector(filter=Filter(must=[]))
        else:
            selector = PointIdsList(points=list(ids))
        await self._client.delete(
            collection_name=collection,
            points_selector=selector,
            wait=True,
        )

    async def get_collection_info(self, collection: str) -> CollectionInfo:
        info = await self._client.get_collection(collection)
        status = getattr(info.status, "value", info.status)
        return CollectionInfo(
            name=collection,
            points_count=info.points_count or 0,
            status=str(status),
            backend=self.name,
        )

    async def close(self) -> None:
        await self._client.close()
