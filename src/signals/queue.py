"""Durable signal queue with lease-based multi-worker coordination."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from config import SignalQueueConfig, settings
from models import (
    LAST_ERROR_MAX_LENGTH,
    SignalEntry,
    SignalPriority,
    SignalStatus,
    WindowType,
)
from time_utils import ensure_utc, optional_utc, utc_now

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (
    SignalStatus.PROCESSED.value,
    SignalStatus.SKIPPED.value,
    SignalStatus.EXPIRED.value,
)


@dataclass(frozen=True)
class AcquiredSignal:
    """Immutable view of a signal claimed by a worker lease."""

    id: int
    user_id: str
    event_type: str
    priority: SignalPriority
    window_type: WindowType
    target_entity_type: str | None
    target_entity_id: str | None
    scheduled_window_start: datetime | None
    created_at: datetime
    expires_at: datetime
    lease_holder: str
    leased_until: datetime
    retry_count: int


@dataclass(frozen=True)
class LeaseReclaimResult:
    """Counts of expired leases returned to Pending or abandoned."""

    released: int
    abandoned: int


@dataclass(frozen=True)
class FailureResult:
    """Counts of failed signals requeued or abandoned."""

    requeued: int
    abandoned: int


@dataclass(frozen=True)
class QueueHealth:
    """Operational snapshot of queue state."""

    status_counts: dict[str, int]
    pending_by_priority: dict[int, int]
    oldest_pending_age_seconds: float | None


def default_ttl(
    priority: SignalPriority,
    config: SignalQueueConfig | None = None,
) -> timedelta:
    """Return the hard TTL applied to a signal of the given priority."""
    config = config or settings.signal_queue
    hours = {
        SignalPriority.URGENT: config.urgent_ttl_hours,
        SignalPriority.WINDOW_ALIGNED: config.window_aligned_ttl_hours,
        SignalPriority.STANDARD: config.standard_ttl_hours,
        SignalPriority.LOW: config.low_ttl_hours,
    }[SignalPriority(priority)]
    return timedelta(hours=hours)


def enqueue_signal(
    session: Session,
    *,
    user_id: str,
    event_type: str,
    priority: SignalPriority,
    window_type: WindowType,
    target_entity_type: str | None = None,
    target_entity_id: str | None = None,
    scheduled_window_start: datetime | None = None,
    expires_at: datetime | None = None,
    now: datetime | None = None,
) -> SignalEntry:
    """Add a Pending signal within the caller's transaction."""
    if not user_id:
        raise ValueError("user_id is required")
    if not event_type:
        raise ValueError("event_type is required")
    now = ensure_utc(now or utc_now())
    expires_at = ensure_utc(expires_at) if expires_at else now + default_ttl(priority)
    entry = SignalEntry(
        user_id=user_id,
        event_type=event_type,
        priority=int(priority),
        window_type=WindowType(window_type).value,
        target_entity_type=target_entity_type,
        target_entity_id=target_entity_id,
        scheduled_window_start=optional_utc(scheduled_window_start),
        status=SignalStatus.PENDING.value,
        retry_count=0,
        created_at=now,
        expires_at=expires_at,
    )
    session.add(entry)
    session.flush()
    logger.debug(
        "Enqueued signal id=%s user=%s event=%s priority=%s window=%s",
        entry.id,
        user_id,
        event_type,
        int(priority),
        entry.window_type,
    )
    return entry


def _acquirable_filter(now: datetime, max_priority: SignalPriority):
    return and_(
        SignalEntry.status == SignalStatus.PENDING.value,
        SignalEntry.priority <= int(max_priority),
        SignalEntry.expires_at > now,
        or_(
            SignalEntry.window_type == WindowType.IMMEDIATE.value,
            SignalEntry.scheduled_window_start.is_(None),
            SignalEntry.scheduled_window_start <= now,
        ),
    )


def acquire_batch(
    session: Session,
    worker_id: str,
    *,
    max_priority: SignalPriority,
    lease_duration: timedelta,
    batch_size: int,
    now: datetime | None = None,
    user_id: str | None = None,
) -> list[AcquiredSignal]:
    """Claim up to batch_size acquirable signals for a worker.

    Candidate rows are selected with ``FOR UPDATE SKIP LOCKED`` so contended
    rows are excluded rather than waited on. The claim itself is a guarded
    update on ``status = Pending``; only rows that update touched belong to
    this worker. The claim is committed before returning.
    """
    if not worker_id:
        raise ValueError("worker_id is required")
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    if lease_duration <= timedelta(0):
        raise ValueError("lease_duration must be positive")
    now = ensure_utc(now or utc_now())
    leased_until = now + lease_duration

    conditions = [_acquirable_filter(now, max_priority)]
    if user_id is not None:
        conditions.append(SignalEntry.user_id == user_id)
    query = (
        select(SignalEntry.id)
        .where(*conditions)
        .order_by(SignalEntry.priority, SignalEntry.created_at, SignalEntry.id)
        .limit(batch_size)
        .with_for_update(skip_locked=True)
    )
    candidate_ids = list(session.execute(query).scalars())
    if not candidate_ids:
        session.commit()
        return []

    session.execute(
        update(SignalEntry)
        .where(
            SignalEntry.id.in_(candidate_ids),
            SignalEntry.status == SignalStatus.PENDING.value,
        )
        .values(
            status=SignalStatus.PROCESSING.value,
            lease_holder=worker_id,
            leased_until=leased_until,
        )
        .execution_options(synchronize_session=False)
    )
    rows = (
        session.execute(
            select(SignalEntry)
            .where(
                SignalEntry.id.in_(candidate_ids),
                SignalEntry.status == SignalStatus.PROCESSING.value,
                SignalEntry.lease_holder == worker_id,
                SignalEntry.leased_until == leased_until,
            )
            .order_by(SignalEntry.priority, SignalEntry.created_at, SignalEntry.id)
            .execution_options(populate_existing=True)
        )
        .scalars()
        .all()
    )
    acquired = [_to_acquired(row) for row in rows]
    session.commit()
    if len(acquired) < len(candidate_ids):
        logger.debug(
            "Worker %s lost %s contended signal(s) during acquisition",
            worker_id,
            len(candidate_ids) - len(acquired),
        )
    logger.info(
        "Worker %s acquired %s signal(s) max_priority=%s",
        worker_id,
        len(acquired),
        int(max_priority),
    )
    return acquired


def _to_acquired(row: SignalEntry) -> AcquiredSignal:
    return AcquiredSignal(
        id=row.id,
        user_id=row.user_id,
        event_type=row.event_type,
        priority=SignalPriority(row.priority),
        window_type=WindowType(row.window_type),
        target_entity_type=row.target_entity_type,
        target_entity_id=row.target_entity_id,
        scheduled_window_start=optional_utc(row.scheduled_window_start),
        created_at=ensure_utc(row.created_at),
        expires_at=ensure_utc(row.expires_at),
        lease_holder=row.lease_holder,
        leased_until=ensure_utc(row.leased_until),
        retry_count=row.retry_count,
    )


def mark_processed(
    session: Session,
    worker_id: str,
    ids: Sequence[int],
    *,
    tier: int,
    now: datetime | None = None,
) -> int:
    """Mark signals leased by worker_id as processed at the given tier.

    Rows whose lease was reclaimed and handed to another worker are left alone.
    """
    if not ids:
        return 0
    now = ensure_utc(now or utc_now())
    result = session.execute(
        update(SignalEntry)
        .where(
            SignalEntry.id.in_(list(ids)),
            SignalEntry.status == SignalStatus.PROCESSING.value,
            SignalEntry.lease_holder == worker_id,
        )
        .values(
            status=SignalStatus.PROCESSED.value,
            processing_tier=tier,
            processed_at=now,
            lease_holder=None,
            leased_until=None,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount or 0


def mark_skipped(
    session: Session,
    ids: Sequence[int],
    reason: str,
    *,
    worker_id: str | None = None,
    now: datetime | None = None,
) -> int:
    """Mark signals as skipped with a reason.

    With a worker_id, Processing rows are only skipped while that worker holds
    their lease.
    """
    if not ids:
        return 0
    now = ensure_utc(now or utc_now())
    if worker_id is None:
        owned = SignalEntry.status.in_(
            [SignalStatus.PENDING.value, SignalStatus.PROCESSING.value]
        )
    else:
        owned = or_(
            SignalEntry.status == SignalStatus.PENDING.value,
            and_(
                SignalEntry.status == SignalStatus.PROCESSING.value,
                SignalEntry.lease_holder == worker_id,
            ),
        )
    result = session.execute(
        update(SignalEntry)
        .where(
            SignalEntry.id.in_(list(ids)),
            owned,
        )
        .values(
            status=SignalStatus.SKIPPED.value,
            skip_reason=_truncate(reason),
            processed_at=now,
            lease_holder=None,
            leased_until=None,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount or 0


def mark_failed(
    session: Session,
    worker_id: str,
    ids: Sequence[int],
    error: str,
    *,
    max_retries: int | None = None,
    now: datetime | None = None,
) -> FailureResult:
    """Record a processing failure, requeueing or abandoning each signal."""
    if not ids:
        return FailureResult(requeued=0, abandoned=0)
    if max_retries is None:
        max_retries = settings.signal_queue.max_retries
    now = ensure_utc(now or utc_now())
    rows = (
        session.execute(
            select(SignalEntry)
            .where(
                SignalEntry.id.in_(list(ids)),
                SignalEntry.status == SignalStatus.PROCESSING.value,
                SignalEntry.lease_holder == worker_id,
            )
            .with_for_update()
        )
        .scalars()
        .all()
    )
    requeued = 0
    abandoned = 0
    for row in rows:
        row.retry_count = (row.retry_count or 0) + 1
        row.last_error = _truncate(error)
        row.lease_holder = None
        row.leased_until = None
        if row.retry_count >= max_retries:
            row.status = SignalStatus.SKIPPED.value
            row.skip_reason = _truncate(f"max retries exceeded: {error}")
            row.processed_at = now
            abandoned += 1
        else:
            row.status = SignalStatus.PENDING.value
            requeued += 1
    session.commit()
    if abandoned:
        logger.warning(
            "Abandoned %s signal(s) after %s retries: %s", abandoned, max_retries, error
        )
    return FailureResult(requeued=requeued, abandoned=abandoned)


def release_expired_leases(
    session: Session,
    *,
    now: datetime | None = None,
    max_retries: int | None = None,
) -> LeaseReclaimResult:
    """Return Processing signals whose lease has lapsed to Pending.

    Each reclaim counts as a retry; signals that reach max_retries are
    skipped instead of requeued. Idempotent and safe to run concurrently.
    """
    if max_retries is None:
        max_retries = settings.signal_queue.max_retries
    now = ensure_utc(now or utc_now())
    expired = and_(
        SignalEntry.status == SignalStatus.PROCESSING.value,
        SignalEntry.leased_until < now,
    )
    abandoned = session.execute(
        update(SignalEntry)
        .where(expired, SignalEntry.retry_count + 1 >= max_retries)
        .values(
            status=SignalStatus.SKIPPED.value,
            retry_count=SignalEntry.retry_count + 1,
            skip_reason="max retries exceeded: lease expired",
            last_error="lease expired",
            processed_at=now,
            lease_holder=None,
            leased_until=None,
        )
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    released = session.execute(
        update(SignalEntry)
        .where(expired)
        .values(
            status=SignalStatus.PENDING.value,
            retry_count=SignalEntry.retry_count + 1,
            last_error="lease expired",
            lease_holder=None,
            leased_until=None,
        )
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    session.commit()
    if released or abandoned:
        logger.info(
            "Reclaimed expired leases: released=%s abandoned=%s", released, abandoned
        )
    return LeaseReclaimResult(released=released, abandoned=abandoned)


def expire_old(session: Session, *, now: datetime | None = None) -> int:
    """Mark Pending signals past their hard TTL as Expired."""
    now = ensure_utc(now or utc_now())
    result = session.execute(
        update(SignalEntry)
        .where(
            SignalEntry.status == SignalStatus.PENDING.value,
            SignalEntry.expires_at <= now,
        )
        .values(status=SignalStatus.EXPIRED.value, processed_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    count = result.rowcount or 0
    if count:
        logger.info("Expired %s pending signal(s)", count)
    return count


def purge_retained(
    session: Session,
    *,
    retention: timedelta,
    now: datetime | None = None,
) -> int:
    """Delete terminal signals older than the retention window."""
    now = ensure_utc(now or utc_now())
    cutoff = now - retention
    result = session.execute(
        delete(SignalEntry)
        .where(
            SignalEntry.status.in_(TERMINAL_STATUSES),
            func.coalesce(SignalEntry.processed_at, SignalEntry.created_at) < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount or 0


def get_queue_health(session: Session, *, now: datetime | None = None) -> QueueHealth:
    """Return per-status counts and the age of the oldest pending signal."""
    now = ensure_utc(now or utc_now())
    status_counts = {status.value: 0 for status in SignalStatus}
    for status, count in session.execute(
        select(SignalEntry.status, func.count()).group_by(SignalEntry.status)
    ):
        status_counts[str(status)] = int(count)
    pending_by_priority: dict[int, int] = {}
    for priority, count in session.execute(
        select(SignalEntry.priority, func.count())
        .where(SignalEntry.status == SignalStatus.PENDING.value)
        .group_by(SignalEntry.priority)
    ):
        pending_by_priority[int(priority)] = int(count)
    oldest = session.execute(
        select(func.min(SignalEntry.created_at)).where(
            SignalEntry.status == SignalStatus.PENDING.value
        )
    ).scalar()
    age = None
    if oldest is not None:
        age = max((now - ensure_utc(oldest)).total_seconds(), 0.0)
    return QueueHealth(
        status_counts=status_counts,
        pending_by_priority=pending_by_priority,
        oldest_pending_age_seconds=age,
    )


def get_users_with_pending(
    session: Session,
    *,
    max_priority: SignalPriority,
    limit: int,
    now: datetime | None = None,
) -> list[str]:
    """Return users holding acquirable signals, most urgent first."""
    now = ensure_utc(now or utc_now())
    rows = session.execute(
        select(SignalEntry.user_id)
        .where(_acquirable_filter(now, max_priority))
        .group_by(SignalEntry.user_id)
        .order_by(func.min(SignalEntry.priority), func.min(SignalEntry.created_at))
        .limit(limit)
    )
    return [str(user_id) for user_id in rows.scalars()]


def get_pending_event_types(
    session: Session,
    user_id: str,
    *,
    within: timedelta,
    now: datetime | None = None,
) -> list[str]:
    """Return event types of the user's recent Pending signals."""
    now = ensure_utc(now or utc_now())
    rows = session.execute(
        select(SignalEntry.event_type).where(
            SignalEntry.user_id == user_id,
            SignalEntry.status == SignalStatus.PENDING.value,
            SignalEntry.created_at >= now - within,
        )
    )
    return [str(event_type) for event_type in rows.scalars()]


def signal_ids(signals: Iterable[AcquiredSignal]) -> list[int]:
    """Return the ids of acquired signals."""
    return [signal.id for signal in signals]


def _truncate(message: str) -> str:
    return (message or "")[:LAST_ERROR_MAX_LENGTH]
