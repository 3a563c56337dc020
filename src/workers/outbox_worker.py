"""Outbox worker: keeps the vector index in step with entity changes."""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Sequence
from uuid import uuid4

from sqlalchemy.orm import Session

from config import OutboxConfig, settings
from signals.outbox import (
    OutboxChange,
    acquire_outbox_batch,
    archive_processed,
    mark_outbox_failed,
    mark_outbox_processed,
    release_expired_outbox_leases,
)
from workers.embedding import EmbeddingProcessor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboxCycleResult:
    """Summary of one outbox polling cycle."""

    released: int = 0
    acquired: int = 0
    unique: int = 0
    processed: int = 0
    failed: int = 0


def dedupe_latest(
    changes: Sequence[OutboxChange],
) -> tuple[list[OutboxChange], dict[tuple[str, str], list[int]]]:
    """Keep the newest change per entity.

    Returns the surviving changes and, per entity key, every entry id the
    survivor stands in for.
    """
    latest: dict[tuple[str, str], OutboxChange] = {}
    ids: dict[tuple[str, str], list[int]] = {}
    for change in changes:
        key = (change.entity_type, change.entity_id)
        ids.setdefault(key, []).append(change.id)
        current = latest.get(key)
        if current is None or (change.created_at, change.id) > (current.created_at, current.id):
            latest[key] = change
    return list(latest.values()), ids


class OutboxWorker:
    """Polls the outbox and hands deduplicated changes to the embedding processor."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        processor: EmbeddingProcessor,
        *,
        worker_id: str | None = None,
        config: OutboxConfig | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._processor = processor
        self._config = config or settings.outbox
        self.worker_id = worker_id or f"outbox-worker-{uuid4().hex[:8]}"

    async def run_once(self, *, now: datetime | None = None) -> OutboxCycleResult:
        if not self._config.enabled:
            return OutboxCycleResult()
        with closing(self._session_factory()) as session:
            released = release_expired_outbox_leases(session, now=now)
            changes = acquire_outbox_batch(
                session,
                self.worker_id,
                lease_duration=timedelta(minutes=self._config.lease_minutes),
                batch_size=self._config.batch_size,
                max_retries=self._config.max_retries,
                now=now,
            )
        if not changes:
            return OutboxCycleResult(released=released)

        unique, ids_by_key = dedupe_latest(changes)
        all_ids = [change.id for change in changes]
        try:
            result = await self._processor.process(unique)
        except Exception as exc:
            logger.exception("Embedding refresh failed for %s outbox entries", len(all_ids))
            with closing(self._session_factory()) as session:
                mark_outbox_failed(
                    session,
                    self.worker_id,
                    all_ids,
                    str(exc),
                    max_retries=self._config.max_retries,
                )
            return OutboxCycleResult(
                released=released,
                acquired=len(changes),
                unique=len(unique),
                failed=len(all_ids),
            )

        failed_ids = [
            entry_id
            for change in result.failed
            for entry_id in ids_by_key[(change.entity_type, change.entity_id)]
        ]
        failed_set = set(failed_ids)
        done_ids = [entry_id for entry_id in all_ids if entry_id not in failed_set]
        with closing(self._session_factory()) as session:
            processed = mark_outbox_processed(session, self.worker_id, done_ids, now=now)
            if failed_ids:
                mark_outbox_failed(
                    session,
                    self.worker_id,
                    failed_ids,
                    "embedding unavailable",
                    max_retries=self._config.max_retries,
                )
        return OutboxCycleResult(
            released=released,
            acquired=len(changes),
            unique=len(unique),
            processed=processed,
            failed=len(failed_ids),
        )

    def archive(self, *, now: datetime | None = None) -> int:
        with closing(self._session_factory()) as session:
            return archive_processed(
                session,
                retention=timedelta(days=self._config.retention_days),
                batch_limit=self._config.archive_batch_limit,
                now=now,
            )
