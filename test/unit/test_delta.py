"""Unit tests for state delta scoring."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from assessment.delta import StateDeltaCalculator, delta_score
from assessment.snapshot import (
    HabitSnapshot,
    HabitStatus,
    TaskSnapshot,
    TaskStatus,
)
from config import DeltaConfig
from models import WindowType
from signals.history import ProcessingHistoryStore, ProcessingRecord, record_processing
from test.helpers.coach_builders import NOW, days_ago, make_signal, make_snapshot


class _FixedHistory:
    def __init__(self, last: datetime | None) -> None:
        self.last = last
        self.calls: list[str] = []

    def last_assessment_time(self, user_id: str) -> datetime | None:
        self.calls.append(user_id)
        return self.last


def _record(user_id: str = "user-1", error: str | None = None) -> ProcessingRecord:
    return ProcessingRecord(
        user_id=user_id,
        window_type=WindowType.BATCH_WINDOW,
        signals_received=2,
        signals_processed=2,
        signals_skipped=0,
        final_tier=0,
        error=error,
    )


def _changed_snapshot():
    return make_snapshot(
        tasks=(
            TaskSnapshot(
                id="task-new",
                title="New task",
                status=TaskStatus.READY,
                created_at=NOW - timedelta(days=2),
            ),
            TaskSnapshot(
                id="task-done",
                title="Finished task",
                status=TaskStatus.COMPLETED,
                created_at=NOW - timedelta(days=30),
                completed_at=NOW - timedelta(days=1),
            ),
            TaskSnapshot(
                id="task-late",
                title="Late task",
                status=TaskStatus.READY,
                due_date=days_ago(2),
                created_at=NOW - timedelta(days=30),
            ),
        ),
        habits=(
            HabitSnapshot(
                id="habit-1",
                title="Stretch",
                status=HabitStatus.ACTIVE,
                adherence_7day=0.3,
                created_at=NOW - timedelta(days=60),
                updated_at=NOW - timedelta(days=1),
            ),
        ),
    )


def test_delta_score_caps_each_factor() -> None:
    """Ensure a single runaway factor cannot exceed its cap."""
    config = DeltaConfig()

    assert delta_score(100, 0, 0, 0, 0, config) == pytest.approx(0.3)
    assert delta_score(0, 0, 0, 100, 0, config) == pytest.approx(0.4)
    assert delta_score(100, 100, 100, 100, 100, config) == 1.0


def test_delta_score_is_monotone_in_every_count() -> None:
    """Ensure increasing any one count never lowers the score."""
    config = DeltaConfig()
    base = [1, 1, 1, 1, 1]
    baseline = delta_score(*base, config)

    for index in range(len(base)):
        bumped = list(base)
        bumped[index] += 1
        assert delta_score(*bumped, config) >= baseline


def test_delta_score_ignores_negative_counts() -> None:
    """Ensure negative counts contribute nothing."""
    assert delta_score(-5, 0, 0, 0, 0, DeltaConfig()) == 0.0


def test_fallback_baseline_without_history() -> None:
    """Ensure the lookback window is used when the user was never assessed."""
    calculator = StateDeltaCalculator(_FixedHistory(None), DeltaConfig())

    summary = calculator.calculate("user-1", make_snapshot(), [])

    assert summary.used_fallback_baseline is True
    assert summary.baseline == NOW - timedelta(days=7)
    assert summary.overall_delta_score == 0.0
    assert summary.changes_by_entity_type == {}


def test_delta_counts_changes_since_baseline() -> None:
    """Ensure new, modified, completed and missed items are counted."""
    calculator = StateDeltaCalculator(_FixedHistory(None), DeltaConfig())
    signals = [make_signal("TaskCreatedEvent"), make_signal("HabitMissedEvent", signal_id=2)]

    summary = calculator.calculate("user-1", _changed_snapshot(), signals)

    assert summary.new_items == 1
    assert summary.modified_items == 1
    assert summary.completed_items == 1
    assert summary.missed_items == 2
    assert summary.new_signals == 2
    assert summary.changes_by_entity_type["Task"].missed == 1
    assert summary.changes_by_entity_type["Habit"].modified == 1
    expected = 0.15 + 0.10 + 0.05 + 0.40 + 0.16
    assert summary.overall_delta_score == pytest.approx(expected)


def test_delta_uses_last_assessment_as_baseline() -> None:
    """Ensure changes before the last assessment are not counted again."""
    history = _FixedHistory(NOW - timedelta(hours=12))
    calculator = StateDeltaCalculator(history, DeltaConfig())

    summary = calculator.calculate("user-1", _changed_snapshot(), [])

    assert history.calls == ["user-1"]
    assert summary.used_fallback_baseline is False
    assert summary.new_items == 0
    assert summary.modified_items == 0
    assert summary.completed_items == 0
    assert summary.missed_items == 2


def test_history_store_returns_last_successful_run(sqlite_session_factory: sessionmaker) -> None:
    """Ensure failed runs are not used as the delta baseline."""
    with sqlite_session_factory() as session:
        record_processing(
            session,
            _record(),
            started_at=NOW - timedelta(days=1, minutes=1),
            completed_at=NOW - timedelta(days=1),
        )
        record_processing(
            session,
            _record(error="boom"),
            started_at=NOW - timedelta(hours=1, minutes=1),
            completed_at=NOW - timedelta(hours=1),
        )
        record_processing(
            session,
            _record(user_id="user-2"),
            started_at=NOW - timedelta(minutes=2),
            completed_at=NOW - timedelta(minutes=1),
        )

    store = ProcessingHistoryStore(sqlite_session_factory)

    assert store.last_assessment_time("user-1") == NOW - timedelta(days=1)
    assert store.last_assessment_time("user-3") is None
