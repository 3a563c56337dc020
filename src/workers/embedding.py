"""Turns outbox changes into vector index upserts and deletes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Sequence

from models import OutboxOperation
from services.embeddings import EmbeddingService
from services.vector_store import EntityRef, VectorDocument, VectorStore
from signals.outbox import OutboxChange

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityText:
    """Embeddable text for one entity."""

    user_id: str
    text: str
    updated_at: datetime | None = None


class EntityTextResolver(Protocol):
    """Loads the current embeddable text of an entity; None when it no longer exists."""

    def resolve(self, entity_type: str, entity_id: str) -> EntityText | None:
        ...


@dataclass(frozen=True)
class EmbeddingBatchResult:
    """Outcome of one processed batch of changes."""

    upserted: int
    deleted: int
    skipped: int
    failed: tuple[OutboxChange, ...] = ()


class EmbeddingProcessor:
    """Resolves entity text, embeds it and writes the vector index."""

    def __init__(
        self,
        resolver: EntityTextResolver,
        embeddings: EmbeddingService,
        store: VectorStore,
    ) -> None:
        self._resolver = resolver
        self._embeddings = embeddings
        self._store = store

    async def process(self, changes: Sequence[OutboxChange]) -> EmbeddingBatchResult:
        deletes: list[EntityRef] = []
        pending: list[tuple[OutboxChange, EntityText]] = []
        skipped = 0
        for change in changes:
            ref = EntityRef(change.entity_type, change.entity_id)
            if change.operation == OutboxOperation.DELETED:
                deletes.append(ref)
                continue
            resolved = self._resolver.resolve(change.entity_type, change.entity_id)
            if resolved is None:
                # Entity vanished after the change was captured.
                deletes.append(ref)
                continue
            if not resolved.text.strip():
                skipped += 1
                continue
            pending.append((change, resolved))

        failed: list[OutboxChange] = []
        documents: list[VectorDocument] = []
        if pending:
            vectors = await self._embeddings.embed_batch([item.text for _, item in pending])
            for (change, item), vector in zip(pending, vectors):
                if not vector:
                    failed.append(change)
                    continue
                documents.append(
                    VectorDocument(
                        entity_type=change.entity_type,
                        entity_id=change.entity_id,
                        user_id=item.user_id,
                        text=item.text,
                        vector=vector,
                        updated_at=item.updated_at,
                    )
                )
        if documents:
            await self._store.upsert(documents)
        if deletes:
            await self._store.delete(deletes)
        logger.info(
            "Embedding batch: upserted=%s deleted=%s skipped=%s failed=%s",
            len(documents),
            len(deletes),
            skipped,
            len(failed),
        )
        return EmbeddingBatchResult(
            upserted=len(documents),
            deleted=len(deletes),
            skipped=skipped,
            failed=tuple(failed),
        )
