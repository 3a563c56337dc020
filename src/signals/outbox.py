"""Change-capture outbox feeding the embedding refresh pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy import and_, delete, select, update
from sqlalchemy.orm import Session

from config import settings
from models import LAST_ERROR_MAX_LENGTH, OutboxEntry, OutboxOperation, OutboxStatus
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboxChange:
    """Immutable view of a leased outbox entry."""

    id: int
    entity_type: str
    entity_id: str
    operation: OutboxOperation
    user_id: str | None
    created_at: datetime
    retry_count: int


def record_change(
    session: Session,
    *,
    entity_type: str,
    entity_id: str,
    operation: OutboxOperation,
    user_id: str | None = None,
    now: datetime | None = None,
) -> OutboxEntry:
    """Record an entity change within the caller's transaction."""
    entry = OutboxEntry(
        entity_type=entity_type,
        entity_id=str(entity_id),
        operation=OutboxOperation(operation).value,
        user_id=user_id,
        status=OutboxStatus.PENDING.value,
        retry_count=0,
        created_at=ensure_utc(now or utc_now()),
    )
    session.add(entry)
    session.flush()
    return entry


def acquire_outbox_batch(
    session: Session,
    worker_id: str,
    *,
    lease_duration: timedelta,
    batch_size: int,
    max_retries: int | None = None,
    now: datetime | None = None,
) -> list[OutboxChange]:
    """Claim up to batch_size pending outbox entries, oldest first."""
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    if max_retries is None:
        max_retries = settings.outbox.max_retries
    now = ensure_utc(now or utc_now())
    leased_until = now + lease_duration
    candidate_ids = list(
        session.execute(
            select(OutboxEntry.id)
            .where(
                OutboxEntry.status == OutboxStatus.PENDING.value,
                OutboxEntry.retry_count < max_retries,
            )
            .order_by(OutboxEntry.created_at, OutboxEntry.id)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        ).scalars()
    )
    if not candidate_ids:
        session.commit()
        return []
    session.execute(
        update(OutboxEntry)
        .where(
            OutboxEntry.id.in_(candidate_ids),
            OutboxEntry.status == OutboxStatus.PENDING.value,
        )
        .values(
            status=OutboxStatus.PROCESSING.value,
            lease_holder=worker_id,
            leased_until=leased_until,
        )
        .execution_options(synchronize_session=False)
    )
    rows = (
        session.execute(
            select(OutboxEntry)
            .where(
                OutboxEntry.id.in_(candidate_ids),
                OutboxEntry.lease_holder == worker_id,
                OutboxEntry.leased_until == leased_until,
                OutboxEntry.status == OutboxStatus.PROCESSING.value,
            )
            .order_by(OutboxEntry.created_at, OutboxEntry.id)
            .execution_options(populate_existing=True)
        )
        .scalars()
        .all()
    )
    changes = [
        OutboxChange(
            id=row.id,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            operation=OutboxOperation(row.operation),
            user_id=row.user_id,
            created_at=ensure_utc(row.created_at),
            retry_count=row.retry_count,
        )
        for row in rows
    ]
    session.commit()
    return changes


def mark_outbox_processed(
    session: Session,
    worker_id: str,
    ids: Sequence[int],
    *,
    now: datetime | None = None,
) -> int:
    """Mark outbox entries leased by worker_id as processed."""
    if not ids:
        return 0
    now = ensure_utc(now or utc_now())
    result = session.execute(
        update(OutboxEntry)
        .where(
            OutboxEntry.id.in_(list(ids)),
            OutboxEntry.status == OutboxStatus.PROCESSING.value,
            OutboxEntry.lease_holder == worker_id,
        )
        .values(
            status=OutboxStatus.PROCESSED.value,
            processed_at=now,
            lease_holder=None,
            leased_until=None,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount or 0


def mark_outbox_failed(
    session: Session,
    worker_id: str,
    ids: Sequence[int],
    error: str,
    *,
    max_retries: int | None = None,
) -> int:
    """Record a failure; entries at max_retries move to Failed, others to Pending.

    Returns the number of entries that reached Failed.
    """
    if not ids:
        return 0
    if max_retries is None:
        max_retries = settings.outbox.max_retries
    rows = (
        session.execute(
            select(OutboxEntry).where(
                OutboxEntry.id.in_(list(ids)),
                OutboxEntry.status == OutboxStatus.PROCESSING.value,
                OutboxEntry.lease_holder == worker_id,
            )
        )
        .scalars()
        .all()
    )
    failed = 0
    for row in rows:
        row.retry_count = (row.retry_count or 0) + 1
        row.last_error = (error or "")[:LAST_ERROR_MAX_LENGTH]
        row.lease_holder = None
        row.leased_until = None
        if row.retry_count >= max_retries:
            row.status = OutboxStatus.FAILED.value
            failed += 1
        else:
            row.status = OutboxStatus.PENDING.value
    session.commit()
    if failed:
        logger.warning("Outbox entries moved to Failed after %s retries: %s", max_retries, failed)
    return failed


def release_expired_outbox_leases(session: Session, *, now: datetime | None = None) -> int:
    """Return Processing outbox entries with lapsed leases to Pending."""
    now = ensure_utc(now or utc_now())
    result = session.execute(
        update(OutboxEntry)
        .where(
            and_(
                OutboxEntry.status == OutboxStatus.PROCESSING.value,
                OutboxEntry.leased_until < now,
            )
        )
        .values(
            status=OutboxStatus.PENDING.value,
            lease_holder=None,
            leased_until=None,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount or 0


def archive_processed(
    session: Session,
    *,
    retention: timedelta,
    batch_limit: int,
    now: datetime | None = None,
) -> int:
    """Delete up to batch_limit processed entries older than the retention window."""
    now = ensure_utc(now or utc_now())
    cutoff = now - retention
    ids = list(
        session.execute(
            select(OutboxEntry.id)
            .where(
                OutboxEntry.status == OutboxStatus.PROCESSED.value,
                OutboxEntry.processed_at < cutoff,
            )
            .order_by(OutboxEntry.processed_at)
            .limit(batch_limit)
        ).scalars()
    )
    if not ids:
        return 0
    result = session.execute(
        delete(OutboxEntry)
        .where(OutboxEntry.id.in_(ids))
        .execution_options(synchronize_session=False)
    )
    session.commit()
    count = result.rowcount or 0
    logger.info("Archived %s processed outbox entries", count)
    return count
