"""Unit tests for the change-capture outbox."""

from __future__ import annotations

from contextlib import closing
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from models import OutboxEntry, OutboxOperation, OutboxStatus
from signals.outbox import (
    OutboxChange,
    acquire_outbox_batch,
    archive_processed,
    mark_outbox_failed,
    mark_outbox_processed,
    record_change,
    release_expired_outbox_leases,
)
from workers.outbox_worker import dedupe_latest
from test.helpers.coach_builders import NOW

LEASE = timedelta(minutes=5)


def _record(session, entity_id: str, *, minutes: int = 0, operation=OutboxOperation.UPDATED):
    return record_change(
        session,
        entity_type="Task",
        entity_id=entity_id,
        operation=operation,
        user_id="user-1",
        now=NOW + timedelta(minutes=minutes),
    )


def _statuses(factory: sessionmaker) -> dict[str, tuple[str, int]]:
    with closing(factory()) as session:
        rows = session.execute(select(OutboxEntry).order_by(OutboxEntry.id)).scalars().all()
        return {row.entity_id: (row.status, row.retry_count) for row in rows}


def test_acquire_leases_oldest_entries_once(sqlite_session_factory: sessionmaker) -> None:
    """Ensure entries are leased oldest first and never to two workers."""
    with closing(sqlite_session_factory()) as session:
        _record(session, "task-2", minutes=2)
        _record(session, "task-1", minutes=1)
        _record(session, "task-3", minutes=3)
        session.commit()

        first = acquire_outbox_batch(session, "worker-a", lease_duration=LEASE, batch_size=2, now=NOW)
        second = acquire_outbox_batch(session, "worker-b", lease_duration=LEASE, batch_size=5, now=NOW)
        third = acquire_outbox_batch(session, "worker-c", lease_duration=LEASE, batch_size=5, now=NOW)

    assert [change.entity_id for change in first] == ["task-1", "task-2"]
    assert [change.entity_id for change in second] == ["task-3"]
    assert third == []
    assert first[0].operation == OutboxOperation.UPDATED
    assert _statuses(sqlite_session_factory)["task-1"] == (OutboxStatus.PROCESSING.value, 0)


def test_acquire_rejects_non_positive_batch(sqlite_session_factory: sessionmaker) -> None:
    """Ensure a zero batch size is a caller error."""
    with closing(sqlite_session_factory()) as session:
        with pytest.raises(ValueError, match="batch_size"):
            acquire_outbox_batch(session, "worker-a", lease_duration=LEASE, batch_size=0)


def test_mark_processed_only_touches_leased_entries(sqlite_session_factory: sessionmaker) -> None:
    """Ensure pending entries cannot be marked processed."""
    with closing(sqlite_session_factory()) as session:
        leased = _record(session, "task-1")
        pending = _record(session, "task-2", minutes=1)
        session.commit()
        acquire_outbox_batch(session, "worker-a", lease_duration=LEASE, batch_size=1, now=NOW)

        count = mark_outbox_processed(session, "worker-a", [leased.id, pending.id], now=NOW)

    assert count == 1
    statuses = _statuses(sqlite_session_factory)
    assert statuses["task-1"][0] == OutboxStatus.PROCESSED.value
    assert statuses["task-2"][0] == OutboxStatus.PENDING.value


def test_stale_worker_cannot_settle_reclaimed_entries(sqlite_session_factory: sessionmaker) -> None:
    """Ensure only the current lease holder can settle an outbox entry."""
    with closing(sqlite_session_factory()) as session:
        entry = _record(session, "task-1")
        session.commit()
        entry_id = entry.id

        acquire_outbox_batch(session, "worker-a", lease_duration=LEASE, batch_size=5, now=NOW)
        later = NOW + timedelta(minutes=10)
        release_expired_outbox_leases(session, now=later)
        acquire_outbox_batch(session, "worker-b", lease_duration=LEASE, batch_size=5, now=later)

        stale_processed = mark_outbox_processed(session, "worker-a", [entry_id], now=later)
        stale_failed = mark_outbox_failed(session, "worker-a", [entry_id], "late", max_retries=1)

    assert (stale_processed, stale_failed) == (0, 0)
    assert _statuses(sqlite_session_factory)["task-1"] == (OutboxStatus.PROCESSING.value, 0)


def test_failures_requeue_until_retries_exhausted(sqlite_session_factory: sessionmaker) -> None:
    """Ensure a failed entry retries and then moves to Failed."""
    with closing(sqlite_session_factory()) as session:
        entry = _record(session, "task-1")
        session.commit()
        entry_id = entry.id

        acquire_outbox_batch(
            session, "worker-a", lease_duration=LEASE, batch_size=5, max_retries=2, now=NOW
        )
        first = mark_outbox_failed(
            session, "worker-a", [entry_id], "embedding down", max_retries=2
        )
        assert _statuses(sqlite_session_factory)["task-1"] == (OutboxStatus.PENDING.value, 1)

        acquire_outbox_batch(
            session, "worker-a", lease_duration=LEASE, batch_size=5, max_retries=2, now=NOW
        )
        second = mark_outbox_failed(
            session, "worker-a", [entry_id], "embedding down", max_retries=2
        )
        again = acquire_outbox_batch(
            session, "worker-a", lease_duration=LEASE, batch_size=5, max_retries=2, now=NOW
        )

    assert first == 0
    assert second == 1
    assert again == []
    assert _statuses(sqlite_session_factory)["task-1"] == (OutboxStatus.FAILED.value, 2)


def test_expired_leases_return_to_pending(sqlite_session_factory: sessionmaker) -> None:
    """Ensure entries held past their lease can be acquired again."""
    with closing(sqlite_session_factory()) as session:
        _record(session, "task-1")
        session.commit()
        acquire_outbox_batch(session, "worker-a", lease_duration=LEASE, batch_size=5, now=NOW)

        early = release_expired_outbox_leases(session, now=NOW + timedelta(minutes=1))
        late = release_expired_outbox_leases(session, now=NOW + timedelta(minutes=10))
        reacquired = acquire_outbox_batch(
            session,
            "worker-b",
            lease_duration=LEASE,
            batch_size=5,
            now=NOW + timedelta(minutes=10),
        )

    assert early == 0
    assert late == 1
    assert [change.entity_id for change in reacquired] == ["task-1"]


def test_archive_deletes_old_processed_entries(sqlite_session_factory: sessionmaker) -> None:
    """Ensure processed entries past retention are deleted in bounded batches."""
    with closing(sqlite_session_factory()) as session:
        ids = [_record(session, f"task-{index}", minutes=index).id for index in range(3)]
        session.commit()
        acquire_outbox_batch(session, "worker-a", lease_duration=LEASE, batch_size=5, now=NOW)
        mark_outbox_processed(session, "worker-a", ids[:2], now=NOW - timedelta(days=10))
        mark_outbox_processed(session, "worker-a", ids[2:], now=NOW)

        first = archive_processed(session, retention=timedelta(days=7), batch_limit=1, now=NOW)
        second = archive_processed(session, retention=timedelta(days=7), batch_limit=10, now=NOW)
        third = archive_processed(session, retention=timedelta(days=7), batch_limit=10, now=NOW)

    assert (first, second, third) == (1, 1, 0)
    assert list(_statuses(sqlite_session_factory)) == ["task-2"]


def test_dedupe_latest_keeps_newest_change_per_entity() -> None:
    """Ensure only the newest change per entity survives with every id tracked."""

    def change(entry_id: int, entity_id: str, minutes: int, operation: OutboxOperation):
        return OutboxChange(
            id=entry_id,
            entity_type="Task",
            entity_id=entity_id,
            operation=operation,
            user_id="user-1",
            created_at=NOW + timedelta(minutes=minutes),
            retry_count=0,
        )

    changes = [
        change(1, "task-1", 0, OutboxOperation.CREATED),
        change(2, "task-2", 1, OutboxOperation.UPDATED),
        change(3, "task-1", 2, OutboxOperation.DELETED),
    ]

    latest, ids = dedupe_latest(changes)

    assert {item.id for item in latest} == {2, 3}
    assert next(item for item in latest if item.entity_id == "task-1").operation == (
        OutboxOperation.DELETED
    )
    assert ids == {("Task", "task-1"): [1, 3], ("Task", "task-2"): [2]}
