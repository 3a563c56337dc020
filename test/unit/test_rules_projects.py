"""Unit tests for project and goal Tier 0 rules."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, time, timezone

import pytest

from assessment.rules.base import Severity
from assessment.rules.projects import (
    GoalScoreboardIncompleteRule,
    ProjectStuckRule,
    scoreboard_severity,
    stuck_severity,
)
from assessment.snapshot import (
    GoalMetric,
    GoalSnapshot,
    GoalStatus,
    MetricKind,
    ProjectSnapshot,
    ProjectStatus,
    TaskSnapshot,
    TaskStatus,
)
from recommendations import ActionKind, RecommendationType
from test.helpers.coach_builders import days_ago, make_signal, make_snapshot


def _at(day) -> datetime:
    return datetime.combine(day, time(12), tzinfo=timezone.utc)


def _project(**fields) -> ProjectSnapshot:
    fields.setdefault("id", "project-1")
    fields.setdefault("title", "Renovate kitchen")
    fields.setdefault("status", ProjectStatus.ACTIVE)
    return ProjectSnapshot(**fields)


def _open_tasks(count: int, project_id: str = "project-1") -> tuple[TaskSnapshot, ...]:
    return tuple(
        TaskSnapshot(
            id=f"task-{index}",
            title=f"Step {index}",
            status=TaskStatus.READY,
            project_id=project_id,
        )
        for index in range(count)
    )


def test_stalled_project_with_open_work_is_stuck() -> None:
    """Ensure ten idle days with three open tasks is a high severity stall."""
    snapshot = make_snapshot(
        projects=(_project(updated_at=_at(days_ago(10))),),
        tasks=_open_tasks(3),
    )

    result = ProjectStuckRule().evaluate(snapshot, [])

    assert result.severity == Severity.HIGH
    assert result.evidence["days_inactive"] == 10
    recommendation = result.direct_recommendation
    assert recommendation.type == RecommendationType.PROJECT_STUCK_FIX
    assert recommendation.action_kind == ActionKind.REFLECT_PROMPT
    assert recommendation.score == pytest.approx(0.8)


def test_project_linked_to_top_goal_is_critical_sooner() -> None:
    """Ensure a project serving a priority 1 goal is critical after two weeks."""
    snapshot = make_snapshot(
        goals=(GoalSnapshot(id="goal-1", title="Health", status=GoalStatus.ACTIVE, priority=1),),
        projects=(_project(goal_id="goal-1", updated_at=_at(days_ago(15))),),
        tasks=_open_tasks(1),
    )

    result = ProjectStuckRule().evaluate(snapshot, [])

    assert result.severity == Severity.CRITICAL
    assert result.evidence["linked_goal_id"] == "goal-1"


def test_recent_task_completion_counts_as_activity() -> None:
    """Ensure a recently completed project task keeps the project moving."""
    done = TaskSnapshot(
        id="task-done",
        title="Order cabinets",
        status=TaskStatus.COMPLETED,
        project_id="project-1",
        completed_at=_at(days_ago(2)),
    )
    snapshot = make_snapshot(
        projects=(_project(updated_at=_at(days_ago(30))),),
        tasks=_open_tasks(2) + (done,),
    )

    assert ProjectStuckRule().evaluate(snapshot, []).triggered is False


def test_project_without_open_tasks_is_not_stuck() -> None:
    """Ensure idle projects with nothing left to do are ignored."""
    snapshot = make_snapshot(projects=(_project(updated_at=_at(days_ago(40))),))

    assert ProjectStuckRule().evaluate(snapshot, []).triggered is False


def test_stuck_severity_thresholds() -> None:
    """Ensure inactivity, task load and priority each raise severity."""
    assert stuck_severity(5, 1, None, 3) is None
    assert stuck_severity(7, 1, None, 3) == Severity.MEDIUM
    assert stuck_severity(7, 1, None, 2) == Severity.HIGH
    assert stuck_severity(14, 1, None, 3) == Severity.HIGH
    assert stuck_severity(21, 5, None, 3) == Severity.CRITICAL


def test_goal_missing_lag_metric_is_incomplete() -> None:
    """Ensure an active goal with only a lead measure is flagged on a goal update."""
    goal = GoalSnapshot(
        id="goal-1",
        title="Run a marathon",
        status=GoalStatus.ACTIVE,
        priority=1,
        metrics=(GoalMetric("metric-1", MetricKind.LEAD),),
    )
    snapshot = make_snapshot(goals=(goal,))

    result = GoalScoreboardIncompleteRule().evaluate(
        snapshot, [make_signal("GoalUpdatedEvent")]
    )

    assert result.severity == Severity.HIGH
    assert result.evidence["missing_metric_kinds"] == ["Lag"]
    assert result.requires_escalation is False
    recommendation = result.direct_recommendation
    assert recommendation.type == RecommendationType.GOAL_SCOREBOARD_SUGGESTION
    assert recommendation.score == pytest.approx(0.75)
    assert "lag" in recommendation.title


def test_scoreboard_rule_needs_a_goal_signal() -> None:
    """Ensure unrelated signals do not trigger the scoreboard rule."""
    goal = GoalSnapshot(id="goal-1", title="Read more", status=GoalStatus.ACTIVE)
    snapshot = make_snapshot(goals=(goal,))

    result = GoalScoreboardIncompleteRule().evaluate(
        snapshot, [make_signal("TaskUpdatedEvent")]
    )

    assert result.triggered is False


def test_goals_created_in_this_batch_are_skipped() -> None:
    """Ensure a goal created moments ago is given time to get a scoreboard."""
    goal = GoalSnapshot(id="goal-1", title="Read more", status=GoalStatus.ACTIVE)
    snapshot = make_snapshot(goals=(goal,))
    created = replace(make_signal("GoalCreatedEvent"), target_entity_id="goal-1")

    assert GoalScoreboardIncompleteRule().evaluate(snapshot, [created]).triggered is False


def test_two_incomplete_top_priority_goals_escalate() -> None:
    """Ensure several priority 1 goals without scoreboards request escalation."""
    goals = tuple(
        GoalSnapshot(id=f"goal-{index}", title=f"Goal {index}", status=GoalStatus.ACTIVE, priority=1)
        for index in range(2)
    )
    snapshot = make_snapshot(goals=goals)

    result = GoalScoreboardIncompleteRule().evaluate(
        snapshot, [make_signal("MorningWindowStart")]
    )

    assert result.requires_escalation is True
    assert result.evidence["missing_metric_kinds"] == ["Lead", "Lag"]


def test_scoreboard_severity_by_priority_and_volume() -> None:
    """Ensure higher priority and more incomplete goals raise severity."""
    assert scoreboard_severity(1, 3) == Severity.CRITICAL
    assert scoreboard_severity(2, 1) == Severity.MEDIUM
    assert scoreboard_severity(3, 1) == Severity.LOW
    assert scoreboard_severity(3, 4) == Severity.MEDIUM
