"""Deterministic Tier 0 rules."""

from __future__ import annotations

from assessment.rules.base import DeterministicRule, RuleResult, Severity
from assessment.rules.engine import RuleEngine, RuleEvaluationResult
from assessment.rules.habits import (
    CheckInMissingRule,
    HabitAdherenceThresholdRule,
    HabitStreakBreakRule,
)
from assessment.rules.projects import GoalScoreboardIncompleteRule, ProjectStuckRule
from assessment.rules.tasks import (
    BacklogTriageRule,
    DeadlineProximityRule,
    TaskCapacityOverloadRule,
    TaskOverdueRule,
)


def default_rules() -> list[DeterministicRule]:
    """Return one instance of every built-in rule."""
    return [
        TaskOverdueRule(),
        DeadlineProximityRule(),
        TaskCapacityOverloadRule(),
        HabitStreakBreakRule(),
        HabitAdherenceThresholdRule(),
        CheckInMissingRule(),
        ProjectStuckRule(),
        GoalScoreboardIncompleteRule(),
        BacklogTriageRule(),
    ]


__all__ = [
    "BacklogTriageRule",
    "CheckInMissingRule",
    "DeadlineProximityRule",
    "DeterministicRule",
    "GoalScoreboardIncompleteRule",
    "HabitAdherenceThresholdRule",
    "HabitStreakBreakRule",
    "ProjectStuckRule",
    "RuleEngine",
    "RuleEvaluationResult",
    "RuleResult",
    "Severity",
    "TaskCapacityOverloadRule",
    "TaskOverdueRule",
    "default_rules",
]
