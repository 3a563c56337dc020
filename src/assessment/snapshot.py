"""Immutable point-in-time view of one user's state."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import date, datetime
from typing import Protocol


class TaskStatus(str, enum.Enum):
    """Task lifecycle states."""

    INBOX = "Inbox"
    READY = "Ready"
    SCHEDULED = "Scheduled"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    ARCHIVED = "Archived"


CLOSED_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.ARCHIVED}
)


class HabitStatus(str, enum.Enum):
    """Habit lifecycle states."""

    ACTIVE = "Active"
    PAUSED = "Paused"
    ARCHIVED = "Archived"


class HabitMode(str, enum.Enum):
    """Habit intensity modes."""

    FULL = "Full"
    MAINTENANCE = "Maintenance"
    MINIMUM = "Minimum"


class GoalStatus(str, enum.Enum):
    """Goal lifecycle states."""

    DRAFT = "Draft"
    ACTIVE = "Active"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    ARCHIVED = "Archived"


class MetricKind(str, enum.Enum):
    """Role a metric plays on a goal scoreboard."""

    LEAD = "Lead"
    LAG = "Lag"
    CONSTRAINT = "Constraint"


class ProjectStatus(str, enum.Enum):
    """Project lifecycle states."""

    ACTIVE = "Active"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    ARCHIVED = "Archived"


class ExperimentStatus(str, enum.Enum):
    """Experiment lifecycle states."""

    DRAFT = "Draft"
    ACTIVE = "Active"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    ABANDONED = "Abandoned"


class CheckInType(str, enum.Enum):
    """Daily check-in kinds."""

    MORNING = "Morning"
    EVENING = "Evening"


@dataclass(frozen=True)
class GoalMetric:
    """Metric attached to a goal scoreboard."""

    metric_definition_id: str
    kind: MetricKind


@dataclass(frozen=True)
class GoalSnapshot:
    """Goal state at snapshot time."""

    id: str
    title: str
    status: GoalStatus
    priority: int = 3
    deadline: date | None = None
    progress: float | None = None
    metrics: tuple[GoalMetric, ...] = ()
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class HabitSnapshot:
    """Habit state at snapshot time."""

    id: str
    title: str
    status: HabitStatus
    mode: HabitMode = HabitMode.FULL
    current_streak: int = 0
    adherence_7day: float = 1.0
    is_scheduled_today: bool = False
    is_completed_today: bool = False
    goal_ids: tuple[str, ...] = ()
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class TaskSnapshot:
    """Task state at snapshot time."""

    id: str
    title: str
    status: TaskStatus
    priority: int = 3
    due_date: date | None = None
    scheduled_date: date | None = None
    estimated_minutes: int | None = None
    energy_cost: int | None = None
    reschedule_count: int = 0
    project_id: str | None = None
    goal_id: str | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        """Return True while the task still needs doing."""
        return self.status not in CLOSED_TASK_STATUSES


@dataclass(frozen=True)
class ProjectSnapshot:
    """Project state at snapshot time."""

    id: str
    title: str
    status: ProjectStatus
    priority: int = 3
    goal_id: str | None = None
    target_end_date: date | None = None
    total_tasks: int = 0
    completed_tasks: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def progress(self) -> float:
        """Return the completed fraction of the project's tasks."""
        if self.total_tasks <= 0:
            return 0.0
        return self.completed_tasks / self.total_tasks


@dataclass(frozen=True)
class ExperimentSnapshot:
    """Experiment state at snapshot time."""

    id: str
    title: str
    status: ExperimentStatus
    hypothesis: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class CheckInSnapshot:
    """A submitted check-in."""

    id: str
    check_in_date: date
    type: CheckInType
    energy_level: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class MetricDefinitionSnapshot:
    """Metric definition owned by the user."""

    id: str
    name: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class UserConstraints:
    """Planning constraints from the user profile."""

    max_planned_minutes_weekday: int = 480
    max_planned_minutes_weekend: int = 240


@dataclass(frozen=True)
class UserProfileSnapshot:
    """Profile facts relevant to assessment."""

    timezone: str = "UTC"
    values: tuple[str, ...] = ()
    roles: tuple[str, ...] = ()
    constraints: UserConstraints | None = None


@dataclass(frozen=True)
class UserStateSnapshot:
    """Read-only aggregate of one user's state for a single pipeline run."""

    user_id: str
    today: date
    captured_at: datetime
    goals: tuple[GoalSnapshot, ...] = ()
    habits: tuple[HabitSnapshot, ...] = ()
    tasks: tuple[TaskSnapshot, ...] = ()
    projects: tuple[ProjectSnapshot, ...] = ()
    experiments: tuple[ExperimentSnapshot, ...] = ()
    check_ins: tuple[CheckInSnapshot, ...] = ()
    metric_definitions: tuple[MetricDefinitionSnapshot, ...] = ()
    check_in_streak: int = 0
    profile: UserProfileSnapshot | None = None

    @property
    def active_habits(self) -> tuple[HabitSnapshot, ...]:
        return tuple(habit for habit in self.habits if habit.status == HabitStatus.ACTIVE)

    @property
    def active_goals(self) -> tuple[GoalSnapshot, ...]:
        return tuple(goal for goal in self.goals if goal.status == GoalStatus.ACTIVE)

    @property
    def open_tasks(self) -> tuple[TaskSnapshot, ...]:
        return tuple(task for task in self.tasks if task.is_open)

    def check_in_for(self, check_in_type: CheckInType, day: date | None = None) -> CheckInSnapshot | None:
        """Return the check-in of the given type for a day (today by default)."""
        day = day or self.today
        for check_in in self.check_ins:
            if check_in.type == check_in_type and check_in.check_in_date == day:
                return check_in
        return None


class SnapshotUnavailable(LookupError):
    """Raised when a snapshot cannot be built for a user."""

    def __init__(self, user_id: str, reason: str) -> None:
        super().__init__(f"snapshot unavailable for user {user_id}: {reason}")
        self.user_id = user_id
        self.reason = reason


class SnapshotProvider(Protocol):
    """Builds a fresh snapshot for each pipeline run."""

    def build_snapshot(self, user_id: str) -> UserStateSnapshot:
        ...
