"""Task-focused Tier 0 rules."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Sequence

from assessment.rules.base import DeterministicRule, RuleResult, Severity
from assessment.snapshot import (
    GoalStatus,
    ProjectStatus,
    TaskSnapshot,
    TaskStatus,
    UserStateSnapshot,
)
from recommendations import (
    ActionKind,
    RecommendationCandidate,
    RecommendationContext,
    RecommendationTarget,
    RecommendationType,
    TargetKind,
)
from signals.queue import AcquiredSignal

OVERDUE_HIGH_DAYS = 7
OVERDUE_MEDIUM_DAYS = 3
RESCHEDULE_HIGH_COUNT = 2
ARCHIVE_RESCHEDULE_COUNT = 4

URGENT_HOURS = 24
WARNING_HOURS = 48
URGENT_PROGRESS_THRESHOLD = 0.75
WARNING_PROGRESS_THRESHOLD = 0.5
DEADLINE_CRITICAL_ITEM_COUNT = 3

CAPACITY_OVERLOAD_RATIO = 1.2
DEFAULT_TASK_MINUTES = 30

BACKLOG_TRIAGE_THRESHOLD = 15


def overdue_severity(days_overdue: int, reschedule_count: int) -> Severity:
    """Map days overdue and reschedule count to a severity."""
    if days_overdue >= OVERDUE_HIGH_DAYS and reschedule_count >= RESCHEDULE_HIGH_COUNT:
        return Severity.CRITICAL
    if days_overdue >= OVERDUE_HIGH_DAYS or reschedule_count >= RESCHEDULE_HIGH_COUNT:
        return Severity.HIGH
    if days_overdue >= OVERDUE_MEDIUM_DAYS:
        return Severity.MEDIUM
    return Severity.LOW


class TaskOverdueRule(DeterministicRule):
    """Detects open tasks past their due date."""

    rule_id = "TASK_OVERDUE"
    rule_name = "Task Overdue"
    description = "Detects tasks past their due date, weighting repeated reschedules."

    def evaluate(
        self,
        snapshot: UserStateSnapshot,
        signals: Sequence[AcquiredSignal],
    ) -> RuleResult:
        overdue = [
            (task, (snapshot.today - task.due_date).days)
            for task in snapshot.open_tasks
            if task.due_date is not None and task.due_date < snapshot.today
        ]
        if not overdue:
            return self.not_triggered()
        overdue.sort(key=lambda item: (item[1], item[0].reschedule_count), reverse=True)
        task, days = overdue[0]
        severity = overdue_severity(days, task.reschedule_count)
        archive = (
            task.reschedule_count >= ARCHIVE_RESCHEDULE_COUNT and days >= OVERDUE_HIGH_DAYS
        )
        evidence = {
            "overdue_task_count": len(overdue),
            "task_id": task.id,
            "task_title": task.title,
            "days_overdue": days,
            "reschedule_count": task.reschedule_count,
            "archive_suggested": archive,
        }
        recommendation = (
            self._archive_recommendation(task, days)
            if archive
            else self._reschedule_recommendation(task, days, snapshot)
        )
        return self.triggered(severity, evidence, recommendation)

    def _archive_recommendation(self, task: TaskSnapshot, days: int) -> RecommendationCandidate:
        return RecommendationCandidate(
            type=RecommendationType.TASK_ARCHIVE_SUGGESTION,
            target=RecommendationTarget(TargetKind.TASK, task.id, task.title),
            action_kind=ActionKind.REMOVE,
            title=f'Consider archiving "{task.title}"',
            rationale=(
                f"This task is {days} days overdue and has been rescheduled "
                f"{task.reschedule_count} times. Letting it go may free up attention."
            ),
            score=0.7,
            context=RecommendationContext.DRIFT_ALERT,
            action_payload=json.dumps({"taskId": task.id}),
            action_summary="Archive stale task",
        )

    def _reschedule_recommendation(
        self,
        task: TaskSnapshot,
        days: int,
        snapshot: UserStateSnapshot,
    ) -> RecommendationCandidate:
        return RecommendationCandidate(
            type=RecommendationType.SCHEDULE_ADJUSTMENT_SUGGESTION,
            target=RecommendationTarget(TargetKind.TASK, task.id, task.title),
            action_kind=ActionKind.UPDATE,
            title=f'Reschedule "{task.title}" ({days} days overdue)',
            rationale=(
                f"This task slipped past its due date {days} days ago. Pick a realistic "
                "new date or break it into a smaller first step."
            ),
            score=0.75,
            context=RecommendationContext.DRIFT_ALERT,
            action_payload=json.dumps(
                {"taskId": task.id, "newScheduledDate": snapshot.today.isoformat()}
            ),
            action_summary="Pick a new date",
        )


@dataclass(frozen=True)
class _DeadlineItem:
    kind: TargetKind
    id: str
    title: str
    hours_until: int
    progress: float

    @property
    def overdue(self) -> bool:
        return self.hours_until < 0


class DeadlineProximityRule(DeterministicRule):
    """Detects imminent deadlines with insufficient progress."""

    rule_id = "DEADLINE_PROXIMITY"
    rule_name = "Deadline Proximity Alert"
    description = "Detects tasks, projects, and goals due within 48 hours with low progress."

    def evaluate(
        self,
        snapshot: UserStateSnapshot,
        signals: Sequence[AcquiredSignal],
    ) -> RuleResult:
        items = self._collect(snapshot)
        if not items:
            return self.not_triggered()
        most_urgent = min(items, key=lambda item: item.hours_until)
        overdue = most_urgent.overdue
        if (
            most_urgent.hours_until <= URGENT_HOURS
            or len(items) >= DEADLINE_CRITICAL_ITEM_COUNT
        ):
            severity = Severity.CRITICAL
        else:
            severity = Severity.HIGH
        evidence = {
            "urgent_item_count": len(items),
            "most_urgent_kind": most_urgent.kind.value,
            "most_urgent_id": most_urgent.id,
            "most_urgent_title": most_urgent.title,
            "most_urgent_hours_until": most_urgent.hours_until,
            "most_urgent_progress": round(most_urgent.progress * 100, 1),
            "overdue": overdue,
            "overdue_count": sum(1 for item in items if item.overdue),
        }
        kind_label = most_urgent.kind.value.lower()
        if overdue:
            title = f'Overdue: "{most_urgent.title}" was due {-most_urgent.hours_until} hours ago'
        elif most_urgent.hours_until == 0:
            title = f'Urgent: "{most_urgent.title}" is due today'
        else:
            title = f'Urgent: "{most_urgent.title}" due in {most_urgent.hours_until} hours'
        recommendation = RecommendationCandidate(
            type=RecommendationType.NEXT_BEST_ACTION,
            target=RecommendationTarget(most_urgent.kind, most_urgent.id, most_urgent.title),
            action_kind=ActionKind.EXECUTE_TODAY,
            title=title,
            rationale=(
                f"This {kind_label} is due with only "
                f"{round(most_urgent.progress * 100)}% progress. Focus on it today."
            ),
            score=0.98 if overdue else 0.95,
            context=RecommendationContext.DRIFT_ALERT,
            action_summary=f"Prioritize {kind_label} completion",
        )
        return self.triggered(severity, evidence, recommendation)

    def _collect(self, snapshot: UserStateSnapshot) -> list[_DeadlineItem]:
        items: list[_DeadlineItem] = []
        # Tasks past their due date belong to TaskOverdueRule; tasks due today stay here.
        for task in snapshot.open_tasks:
            hours = _hours_until(snapshot, task.due_date)
            if hours is not None and hours >= 0:
                items.append(_DeadlineItem(TargetKind.TASK, task.id, task.title, hours, 0.0))
        for project in snapshot.projects:
            if project.status != ProjectStatus.ACTIVE:
                continue
            hours = _hours_until(snapshot, project.target_end_date)
            if hours is not None and _qualifies(hours, project.progress):
                items.append(
                    _DeadlineItem(
                        TargetKind.PROJECT, project.id, project.title, hours, project.progress
                    )
                )
        for goal in snapshot.goals:
            if goal.status != GoalStatus.ACTIVE:
                continue
            hours = _hours_until(snapshot, goal.deadline)
            progress = goal.progress if goal.progress is not None else 0.0
            if hours is not None and _qualifies(hours, progress):
                items.append(_DeadlineItem(TargetKind.GOAL, goal.id, goal.title, hours, progress))
        return items


def _hours_until(snapshot: UserStateSnapshot, deadline) -> int | None:
    """Return hours until a deadline no further out than the warning window.

    Negative values mean the deadline has passed.
    """
    if deadline is None:
        return None
    hours = (deadline - snapshot.today).days * 24
    if hours <= WARNING_HOURS:
        return hours
    return None


def _progress_threshold(hours_until: int) -> float:
    if hours_until <= URGENT_HOURS:
        return URGENT_PROGRESS_THRESHOLD
    return WARNING_PROGRESS_THRESHOLD


def _qualifies(hours_until: int, progress: float) -> bool:
    """Due or past-due items always qualify; others only when progress lags."""
    return hours_until <= 0 or progress < _progress_threshold(hours_until)


class TaskCapacityOverloadRule(DeterministicRule):
    """Detects days planned beyond the user's capacity."""

    rule_id = "TASK_CAPACITY_OVERLOAD"
    rule_name = "Capacity Overload Detection"
    description = "Detects when planned work for today exceeds available capacity by more than 20%."

    def evaluate(
        self,
        snapshot: UserStateSnapshot,
        signals: Sequence[AcquiredSignal],
    ) -> RuleResult:
        if snapshot.profile is None or snapshot.profile.constraints is None:
            return self.not_triggered()
        constraints = snapshot.profile.constraints
        is_weekend = snapshot.today.weekday() >= 5
        capacity = (
            constraints.max_planned_minutes_weekend
            if is_weekend
            else constraints.max_planned_minutes_weekday
        )
        if capacity <= 0:
            return self.not_triggered()
        today_tasks = [
            task for task in snapshot.open_tasks if task.scheduled_date == snapshot.today
        ]
        planned = sum(task.estimated_minutes or DEFAULT_TASK_MINUTES for task in today_tasks)
        if planned <= int(capacity * CAPACITY_OVERLOAD_RATIO):
            return self.not_triggered()
        overload_pct = planned / capacity * 100 - 100
        if overload_pct > 50:
            severity, score = Severity.CRITICAL, 0.95
        elif overload_pct > 35:
            severity, score = Severity.HIGH, 0.85
        else:
            severity, score = Severity.MEDIUM, 0.75
        evidence = {
            "planned_minutes": planned,
            "capacity_minutes": capacity,
            "overload_percentage": round(overload_pct, 1),
            "task_count": len(today_tasks),
            "is_weekend": is_weekend,
        }
        recommendation = RecommendationCandidate(
            type=RecommendationType.PLAN_REALISM_ADJUSTMENT,
            target=RecommendationTarget(TargetKind.USER_PROFILE),
            action_kind=ActionKind.REFLECT_PROMPT,
            title=f"Today's plan is {round(overload_pct)}% over capacity",
            rationale=(
                f"You have {planned} minutes of tasks scheduled but only {capacity} minutes "
                f"available. Move at least {planned - capacity} minutes to another day."
            ),
            score=score,
            context=RecommendationContext.DRIFT_ALERT,
            action_summary="Review and reschedule lower-priority tasks",
        )
        return self.triggered(severity, evidence, recommendation)


class BacklogTriageRule(DeterministicRule):
    """Flags a large unscheduled backlog for model-guided triage."""

    rule_id = "BACKLOG_TRIAGE"
    rule_name = "Backlog Triage Needed"
    description = "Escalates when many open tasks have no scheduled date."

    def evaluate(
        self,
        snapshot: UserStateSnapshot,
        signals: Sequence[AcquiredSignal],
    ) -> RuleResult:
        backlog = [
            task
            for task in snapshot.open_tasks
            if task.status in (TaskStatus.INBOX, TaskStatus.READY) and task.scheduled_date is None
        ]
        if len(backlog) < BACKLOG_TRIAGE_THRESHOLD:
            return self.not_triggered()
        return self.triggered(
            Severity.MEDIUM,
            {"unscheduled_task_count": len(backlog)},
            requires_escalation=True,
        )
