"""State delta calculation against the last completed assessment."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Protocol, Sequence

from assessment.snapshot import UserStateSnapshot
from config import DeltaConfig, settings
from signals.queue import AcquiredSignal
from time_utils import ensure_utc

logger = logging.getLogger(__name__)

MISSED_ADHERENCE_THRESHOLD = 0.5


class AssessmentHistory(Protocol):
    """Source of the last completed assessment time per user."""

    def last_assessment_time(self, user_id: str) -> datetime | None:
        ...


@dataclass
class EntityChangeCounts:
    """Change counts for a single entity type."""

    new: int = 0
    modified: int = 0
    completed: int = 0
    missed: int = 0

    @property
    def total(self) -> int:
        return self.new + self.modified + self.completed + self.missed


@dataclass(frozen=True)
class StateDeltaSummary:
    """How much a user's state moved since the baseline."""

    baseline: datetime
    last_assessment_time: datetime | None
    new_items: int
    modified_items: int
    completed_items: int
    missed_items: int
    new_signals: int
    overall_delta_score: float
    changes_by_entity_type: dict[str, EntityChangeCounts] = field(default_factory=dict)

    @property
    def used_fallback_baseline(self) -> bool:
        return self.last_assessment_time is None


def delta_score(
    new_items: int,
    modified_items: int,
    completed_items: int,
    missed_items: int,
    new_signals: int,
    config: DeltaConfig | None = None,
) -> float:
    """Return the capped weighted sum of the change factors, clamped to 1.0.

    Each factor contributes ``min(count * weight, cap)`` so the score never
    decreases when any single count grows.
    """
    config = config or settings.assessment.delta
    factors = (
        (new_items, config.new_items),
        (modified_items, config.modified_items),
        (completed_items, config.completed_items),
        (missed_items, config.missed_items),
        (new_signals, config.new_signals),
    )
    total = sum(min(max(count, 0) * factor.weight, factor.cap) for count, factor in factors)
    return min(total, 1.0)


def _after(value: datetime | None, baseline: datetime) -> bool:
    return value is not None and ensure_utc(value) > baseline


def _count_changes(
    counts: EntityChangeCounts,
    items: Iterable,
    baseline: datetime,
) -> None:
    for item in items:
        created_at = getattr(item, "created_at", None)
        updated_at = getattr(item, "updated_at", None)
        if _after(created_at, baseline):
            counts.new += 1
        elif _after(updated_at, baseline):
            counts.modified += 1


class StateDeltaCalculator:
    """Computes a bounded change-magnitude score for one run."""

    def __init__(
        self,
        history: AssessmentHistory,
        config: DeltaConfig | None = None,
    ) -> None:
        self._history = history
        self._config = config or settings.assessment.delta

    def baseline_for(self, user_id: str, snapshot: UserStateSnapshot) -> tuple[datetime, datetime | None]:
        """Return the baseline and the last assessment time (if any)."""
        last = self._history.last_assessment_time(user_id)
        if last is not None:
            return ensure_utc(last), ensure_utc(last)
        fallback = ensure_utc(snapshot.captured_at) - timedelta(days=self._config.lookback_days)
        return fallback, None

    def calculate(
        self,
        user_id: str,
        snapshot: UserStateSnapshot,
        signals: Sequence[AcquiredSignal],
    ) -> StateDeltaSummary:
        baseline, last_assessment = self.baseline_for(user_id, snapshot)
        by_type: dict[str, EntityChangeCounts] = {
            "Goal": EntityChangeCounts(),
            "Habit": EntityChangeCounts(),
            "Task": EntityChangeCounts(),
            "Project": EntityChangeCounts(),
            "Experiment": EntityChangeCounts(),
            "CheckIn": EntityChangeCounts(),
            "MetricDefinition": EntityChangeCounts(),
        }
        _count_changes(by_type["Goal"], snapshot.goals, baseline)
        _count_changes(by_type["Habit"], snapshot.habits, baseline)
        _count_changes(by_type["Task"], snapshot.tasks, baseline)
        _count_changes(by_type["Project"], snapshot.projects, baseline)
        _count_changes(by_type["Experiment"], snapshot.experiments, baseline)
        _count_changes(by_type["CheckIn"], snapshot.check_ins, baseline)
        _count_changes(by_type["MetricDefinition"], snapshot.metric_definitions, baseline)

        by_type["Task"].completed = sum(
            1 for task in snapshot.tasks if _after(task.completed_at, baseline)
        )
        by_type["Habit"].missed = sum(
            1
            for habit in snapshot.active_habits
            if habit.adherence_7day < MISSED_ADHERENCE_THRESHOLD
        )
        by_type["Task"].missed = sum(
            1
            for task in snapshot.open_tasks
            if task.due_date is not None and task.due_date < snapshot.today
        )

        new_items = sum(counts.new for counts in by_type.values())
        modified_items = sum(counts.modified for counts in by_type.values())
        completed_items = sum(counts.completed for counts in by_type.values())
        missed_items = sum(counts.missed for counts in by_type.values())
        score = delta_score(
            new_items,
            modified_items,
            completed_items,
            missed_items,
            len(signals),
            self._config,
        )
        logger.debug(
            "Delta for user %s since %s: new=%s modified=%s completed=%s missed=%s "
            "signals=%s score=%.3f",
            user_id,
            baseline.isoformat(),
            new_items,
            modified_items,
            completed_items,
            missed_items,
            len(signals),
            score,
        )
        return StateDeltaSummary(
            baseline=baseline,
            last_assessment_time=last_assessment,
            new_items=new_items,
            modified_items=modified_items,
            completed_items=completed_items,
            missed_items=missed_items,
            new_signals=len(signals),
            overall_delta_score=score,
            changes_by_entity_type={
                entity: counts for entity, counts in by_type.items() if counts.total
            },
        )
