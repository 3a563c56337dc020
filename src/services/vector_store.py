"""Per-user vector index for entity embeddings, backed by Qdrant."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Sequence

from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models

from config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VectorDocument:
    """Embedded entity text ready for upsert."""

    entity_type: str
    entity_id: str
    user_id: str
    text: str
    vector: Sequence[float]
    updated_at: datetime | None = None


@dataclass(frozen=True)
class VectorSearchResult:
    """Ranked similarity hit."""

    entity_type: str
    entity_id: str
    text: str
    score: float
    updated_at: str | None = None


@dataclass(frozen=True)
class EntityRef:
    """Reference to an indexed entity."""

    entity_type: str
    entity_id: str


class VectorStore(Protocol):
    """Similarity search scoped to one user."""

    async def search(
        self,
        user_id: str,
        vector: Sequence[float],
        top_k: int,
        entity_types: Sequence[str] | None = None,
    ) -> list[VectorSearchResult]:
        ...

    async def upsert(self, documents: Sequence[VectorDocument]) -> None:
        ...

    async def delete(self, refs: Sequence[EntityRef]) -> None:
        ...


def point_id(entity_type: str, entity_id: str) -> str:
    """Return the deterministic point id for an entity."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{entity_type}:{entity_id}"))


class QdrantVectorStore:
    """Stores one point per entity with ``user_id`` and ``entity_type`` payload filters."""

    def __init__(
        self,
        client: AsyncQdrantClient | None = None,
        collection: str | None = None,
        vector_size: int | None = None,
    ) -> None:
        self._client = client or AsyncQdrantClient(url=settings.qdrant.url)
        self._collection = collection or settings.qdrant.collection
        self._vector_size = vector_size or settings.qdrant.vector_size
        self._collection_ready = False

    async def _ensure_collection(self) -> None:
        if self._collection_ready:
            return
        if not await self._client.collection_exists(self._collection):
            logger.info("Creating Qdrant collection %s", self._collection)
            await self._client.create_collection(
                collection_name=self._collection,
                vectors_config=models.VectorParams(
                    size=self._vector_size,
                    distance=models.Distance.COSINE,
                ),
            )
        self._collection_ready = True

    async def search(
        self,
        user_id: str,
        vector: Sequence[float],
        top_k: int,
        entity_types: Sequence[str] | None = None,
    ) -> list[VectorSearchResult]:
        """Return the user's nearest entities, best first."""
        must: list[models.FieldCondition] = [
            models.FieldCondition(key="user_id", match=models.MatchValue(value=user_id)),
        ]
        if entity_types:
            must.append(
                models.FieldCondition(
                    key="entity_type", match=models.MatchAny(any=list(entity_types))
                )
            )
        response = await self._client.query_points(
            collection_name=self._collection,
            query=list(vector),
            query_filter=models.Filter(must=must),
            limit=top_k,
            with_payload=True,
        )
        results: list[VectorSearchResult] = []
        for hit in response.points:
            payload = hit.payload or {}
            results.append(
                VectorSearchResult(
                    entity_type=str(payload.get("entity_type", "")),
                    entity_id=str(payload.get("entity_id", "")),
                    text=str(payload.get("text", "")),
                    score=float(hit.score),
                    updated_at=payload.get("updated_at"),
                )
            )
        return results

    async def upsert(self, documents: Sequence[VectorDocument]) -> None:
        """Insert or replace the points for the given documents."""
        if not documents:
            return
        await self._ensure_collection()
        points = [
            models.PointStruct(
                id=point_id(document.entity_type, document.entity_id),
                vector=list(document.vector),
                payload={
                    "user_id": document.user_id,
                    "entity_type": document.entity_type,
                    "entity_id": document.entity_id,
                    "text": document.text,
                    "updated_at": document.updated_at.isoformat() if document.updated_at else None,
                },
            )
            for document in documents
        ]
        await self._client.upsert(collection_name=self._collection, points=points, wait=True)
        logger.info("Upserted %s point(s) into %s", len(points), self._collection)

    async def delete(self, refs: Sequence[EntityRef]) -> None:
        """Remove the points for the given entities."""
        if not refs:
            return
        await self._client.delete(
            collection_name=self._collection,
            points_selector=models.PointIdsList(
                points=[point_id(ref.entity_type, ref.entity_id) for ref in refs]
            ),
            wait=True,
        )
        logger.info("Deleted %s point(s) from %s", len(refs), self._collection)
