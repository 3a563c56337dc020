"""Project and goal scoreboard Tier 0 rules."""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Sequence

from assessment.rules.base import DeterministicRule, RuleResult, Severity, has_signal
from assessment.snapshot import (
    GoalSnapshot,
    MetricKind,
    ProjectSnapshot,
    ProjectStatus,
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
from signals.registry import MORNING_WINDOW_START

STUCK_WARNING_DAYS = 7
STUCK_HIGH_DAYS = 14
STUCK_CRITICAL_DAYS = 21
MANY_TASKS = 3
TOO_MANY_TASKS = 5

GOAL_EVENT_TYPES = (
    "GoalCreatedEvent",
    "GoalUpdatedEvent",
    "GoalScoreboardUpdatedEvent",
    MORNING_WINDOW_START,
)
SCOREBOARD_VOLUME = 3
P1_ESCALATION_COUNT = 2


def _as_date(value: datetime | date | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


def stuck_severity(days_inactive: int, active_tasks: int, goal_priority: int | None, priority: int) -> Severity | None:
    """Severity of a project that has not moved for ``days_inactive`` days."""
    if (days_inactive >= STUCK_CRITICAL_DAYS and active_tasks >= TOO_MANY_TASKS) or (
        goal_priority == 1 and days_inactive >= STUCK_HIGH_DAYS
    ):
        return Severity.CRITICAL
    if (
        days_inactive >= STUCK_HIGH_DAYS
        or (active_tasks >= MANY_TASKS and days_inactive >= STUCK_WARNING_DAYS)
        or (priority <= 2 and days_inactive >= STUCK_WARNING_DAYS)
    ):
        return Severity.HIGH
    if days_inactive >= STUCK_WARNING_DAYS:
        return Severity.MEDIUM
    return None


def stuck_score(severity: Severity, active_tasks: int, priority: int) -> float:
    base = {
        Severity.CRITICAL: 0.85,
        Severity.HIGH: 0.75,
        Severity.MEDIUM: 0.65,
    }.get(severity, 0.55)
    if active_tasks >= TOO_MANY_TASKS:
        base += 0.10
    elif active_tasks >= MANY_TASKS:
        base += 0.05
    if priority == 1:
        base += 0.05
    elif priority == 2:
        base += 0.02
    return min(base, 0.95)


class ProjectStuckRule(DeterministicRule):
    """Detects active projects with open work and no recent activity."""

    rule_id = "PROJECT_STUCK"
    rule_name = "Project Stuck Detection"
    description = "Detects active projects with open tasks and no activity for a week or more."

    def evaluate(
        self,
        snapshot: UserStateSnapshot,
        signals: Sequence[AcquiredSignal],
    ) -> RuleResult:
        goal_priorities = {goal.id: goal.priority for goal in snapshot.goals}
        stuck: list[tuple[Severity, int, int, ProjectSnapshot]] = []
        for project in snapshot.projects:
            if project.status != ProjectStatus.ACTIVE:
                continue
            active_tasks = [task for task in snapshot.open_tasks if task.project_id == project.id]
            if not active_tasks:
                continue
            days = self._days_inactive(snapshot, project)
            goal_priority = goal_priorities.get(project.goal_id) if project.goal_id else None
            severity = stuck_severity(days, len(active_tasks), goal_priority, project.priority)
            if severity is not None:
                stuck.append((severity, days, len(active_tasks), project))
        if not stuck:
            return self.not_triggered()
        stuck.sort(key=lambda item: (item[0], item[1], item[2]), reverse=True)
        severity, days, active_count, project = stuck[0]
        evidence = {
            "stuck_project_count": len(stuck),
            "project_id": project.id,
            "project_title": project.title,
            "days_inactive": days,
            "active_task_count": active_count,
            "project_priority": project.priority,
            "linked_goal_id": project.goal_id,
        }
        recommendation = RecommendationCandidate(
            type=RecommendationType.PROJECT_STUCK_FIX,
            target=RecommendationTarget(TargetKind.PROJECT, project.id, project.title),
            action_kind=ActionKind.REFLECT_PROMPT,
            title=f'"{project.title}" has stalled for {days} days',
            rationale=(
                f"{active_count} open tasks and no progress in {days} days. Identify the "
                "blocker or define the very next action to get it moving again."
            ),
            score=stuck_score(severity, active_count, project.priority),
            context=RecommendationContext.DRIFT_ALERT,
            action_payload=json.dumps({"projectId": project.id}),
            action_summary="Unblock the project",
        )
        return self.triggered(severity, evidence, recommendation)

    def _days_inactive(self, snapshot: UserStateSnapshot, project: ProjectSnapshot) -> int:
        stamps = [_as_date(project.updated_at)]
        for task in snapshot.tasks:
            if task.project_id == project.id:
                stamps.append(_as_date(task.completed_at))
                stamps.append(_as_date(task.updated_at))
        known = [stamp for stamp in stamps if stamp is not None]
        if known:
            return max((snapshot.today - max(known)).days, 0)
        # Without timestamps, a project with completed work is assumed to have moved recently.
        return STUCK_WARNING_DAYS if project.completed_tasks > 0 else STUCK_HIGH_DAYS


def _missing_kinds(goal: GoalSnapshot) -> list[MetricKind]:
    kinds = {metric.kind for metric in goal.metrics}
    return [kind for kind in (MetricKind.LEAD, MetricKind.LAG) if kind not in kinds]


def scoreboard_severity(priority: int, incomplete_count: int) -> Severity:
    """Severity of incomplete scoreboards by most urgent priority and volume."""
    many = incomplete_count >= SCOREBOARD_VOLUME
    if priority == 1:
        return Severity.CRITICAL if many else Severity.HIGH
    if priority == 2:
        return Severity.HIGH if many else Severity.MEDIUM
    return Severity.MEDIUM if many else Severity.LOW


class GoalScoreboardIncompleteRule(DeterministicRule):
    """Detects active goals missing a lead or lag metric."""

    rule_id = "GOAL_SCOREBOARD_INCOMPLETE"
    rule_name = "Goal Scoreboard Incomplete"
    description = "Detects active goals whose scoreboard lacks a lead or lag measure."

    def evaluate(
        self,
        snapshot: UserStateSnapshot,
        signals: Sequence[AcquiredSignal],
    ) -> RuleResult:
        if not has_signal(signals, *GOAL_EVENT_TYPES):
            return self.not_triggered()
        created_now = {
            signal.target_entity_id
            for signal in signals
            if signal.event_type == "GoalCreatedEvent" and signal.target_entity_id
        }
        incomplete = [
            goal
            for goal in snapshot.active_goals
            if goal.id not in created_now and _missing_kinds(goal)
        ]
        if not incomplete:
            return self.not_triggered()
        incomplete.sort(key=lambda goal: (goal.priority, goal.deadline or date.max, goal.id))
        goal = incomplete[0]
        missing = _missing_kinds(goal)
        severity = scoreboard_severity(goal.priority, len(incomplete))
        p1_count = sum(1 for item in incomplete if item.priority == 1)
        priority_bonus = {1: 0.2, 2: 0.1}.get(goal.priority, 0.0)
        score = min(0.5 + priority_bonus + min(0.05 * len(incomplete), 0.15), 0.85)
        missing_labels = " and ".join(kind.value.lower() for kind in missing)
        evidence = {
            "incomplete_goal_count": len(incomplete),
            "p1_incomplete_count": p1_count,
            "goal_id": goal.id,
            "goal_title": goal.title,
            "goal_priority": goal.priority,
            "missing_metric_kinds": [kind.value for kind in missing],
        }
        recommendation = RecommendationCandidate(
            type=RecommendationType.GOAL_SCOREBOARD_SUGGESTION,
            target=RecommendationTarget(TargetKind.GOAL, goal.id, goal.title),
            action_kind=ActionKind.UPDATE,
            title=f'Add a {missing_labels} measure to "{goal.title}"',
            rationale=(
                f"This goal has no {missing_labels} metric, so progress cannot be tracked. "
                "A lead measure shows weekly effort and a lag measure shows the outcome."
            ),
            score=score,
            context=RecommendationContext.PROACTIVE_CHECK,
            action_payload=json.dumps({"goalId": goal.id}),
            action_summary="Complete goal scoreboard",
        )
        return self.triggered(
            severity,
            evidence,
            recommendation,
            requires_escalation=p1_count >= P1_ESCALATION_COUNT,
        )
