"""Recommendation candidate types shared by every assessment tier."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Mapping


class RecommendationType(str, enum.Enum):
    """Kinds of recommendation the pipeline can propose."""

    NEXT_BEST_ACTION = "NextBestAction"
    TASK_BREAKDOWN_SUGGESTION = "TaskBreakdownSuggestion"
    SCHEDULE_ADJUSTMENT_SUGGESTION = "ScheduleAdjustmentSuggestion"
    PLAN_REALISM_ADJUSTMENT = "PlanRealismAdjustment"
    TASK_EDIT_SUGGESTION = "TaskEditSuggestion"
    TASK_ARCHIVE_SUGGESTION = "TaskArchiveSuggestion"
    HABIT_MODE_SUGGESTION = "HabitModeSuggestion"
    HABIT_FROM_LEAD_METRIC_SUGGESTION = "HabitFromLeadMetricSuggestion"
    HABIT_EDIT_SUGGESTION = "HabitEditSuggestion"
    HABIT_ARCHIVE_SUGGESTION = "HabitArchiveSuggestion"
    EXPERIMENT_RECOMMENDATION = "ExperimentRecommendation"
    CHECK_IN_CONSISTENCY_NUDGE = "CheckInConsistencyNudge"
    EXPERIMENT_EDIT_SUGGESTION = "ExperimentEditSuggestion"
    EXPERIMENT_ARCHIVE_SUGGESTION = "ExperimentArchiveSuggestion"
    GOAL_SCOREBOARD_SUGGESTION = "GoalScoreboardSuggestion"
    METRIC_OBSERVATION_REMINDER = "MetricObservationReminder"
    GOAL_EDIT_SUGGESTION = "GoalEditSuggestion"
    GOAL_ARCHIVE_SUGGESTION = "GoalArchiveSuggestion"
    METRIC_EDIT_SUGGESTION = "MetricEditSuggestion"
    PROJECT_STUCK_FIX = "ProjectStuckFix"
    PROJECT_SUGGESTION = "ProjectSuggestion"
    PROJECT_EDIT_SUGGESTION = "ProjectEditSuggestion"
    PROJECT_ARCHIVE_SUGGESTION = "ProjectArchiveSuggestion"
    PROJECT_GOAL_LINK_SUGGESTION = "ProjectGoalLinkSuggestion"


class TargetKind(str, enum.Enum):
    """Entity kinds a recommendation can target."""

    TASK = "Task"
    HABIT = "Habit"
    GOAL = "Goal"
    PROJECT = "Project"
    METRIC = "Metric"
    EXPERIMENT = "Experiment"
    USER_PROFILE = "UserProfile"


class ActionKind(str, enum.Enum):
    """What accepting a recommendation does."""

    CREATE = "Create"
    UPDATE = "Update"
    EXECUTE_TODAY = "ExecuteToday"
    DEFER = "Defer"
    REMOVE = "Remove"
    REFLECT_PROMPT = "ReflectPrompt"
    LEARN_PROMPT = "LearnPrompt"


class RecommendationContext(str, enum.Enum):
    """Situation that produced a recommendation."""

    MORNING_CHECK_IN = "MorningCheckIn"
    EVENING_CHECK_IN = "EveningCheckIn"
    WEEKLY_REVIEW = "WeeklyReview"
    DRIFT_ALERT = "DriftAlert"
    PROACTIVE_CHECK = "ProactiveCheck"


class GenerationDomain(str, enum.Enum):
    """Domains the generation stage fans out over."""

    TASK = "Task"
    HABIT = "Habit"
    EXPERIMENT = "Experiment"
    GOAL_METRIC = "GoalMetric"
    PROJECT = "Project"


TYPE_DOMAINS: Mapping[RecommendationType, GenerationDomain] = {
    RecommendationType.NEXT_BEST_ACTION: GenerationDomain.TASK,
    RecommendationType.TASK_BREAKDOWN_SUGGESTION: GenerationDomain.TASK,
    RecommendationType.SCHEDULE_ADJUSTMENT_SUGGESTION: GenerationDomain.TASK,
    RecommendationType.PLAN_REALISM_ADJUSTMENT: GenerationDomain.TASK,
    RecommendationType.TASK_EDIT_SUGGESTION: GenerationDomain.TASK,
    RecommendationType.TASK_ARCHIVE_SUGGESTION: GenerationDomain.TASK,
    RecommendationType.HABIT_MODE_SUGGESTION: GenerationDomain.HABIT,
    RecommendationType.HABIT_FROM_LEAD_METRIC_SUGGESTION: GenerationDomain.HABIT,
    RecommendationType.HABIT_EDIT_SUGGESTION: GenerationDomain.HABIT,
    RecommendationType.HABIT_ARCHIVE_SUGGESTION: GenerationDomain.HABIT,
    RecommendationType.EXPERIMENT_RECOMMENDATION: GenerationDomain.EXPERIMENT,
    RecommendationType.CHECK_IN_CONSISTENCY_NUDGE: GenerationDomain.EXPERIMENT,
    RecommendationType.EXPERIMENT_EDIT_SUGGESTION: GenerationDomain.EXPERIMENT,
    RecommendationType.EXPERIMENT_ARCHIVE_SUGGESTION: GenerationDomain.EXPERIMENT,
    RecommendationType.GOAL_SCOREBOARD_SUGGESTION: GenerationDomain.GOAL_METRIC,
    RecommendationType.METRIC_OBSERVATION_REMINDER: GenerationDomain.GOAL_METRIC,
    RecommendationType.GOAL_EDIT_SUGGESTION: GenerationDomain.GOAL_METRIC,
    RecommendationType.GOAL_ARCHIVE_SUGGESTION: GenerationDomain.GOAL_METRIC,
    RecommendationType.METRIC_EDIT_SUGGESTION: GenerationDomain.GOAL_METRIC,
    RecommendationType.PROJECT_STUCK_FIX: GenerationDomain.PROJECT,
    RecommendationType.PROJECT_SUGGESTION: GenerationDomain.PROJECT,
    RecommendationType.PROJECT_EDIT_SUGGESTION: GenerationDomain.PROJECT,
    RecommendationType.PROJECT_ARCHIVE_SUGGESTION: GenerationDomain.PROJECT,
    RecommendationType.PROJECT_GOAL_LINK_SUGGESTION: GenerationDomain.PROJECT,
}


def domain_types(domain: GenerationDomain) -> tuple[RecommendationType, ...]:
    """Return the recommendation types generated within a domain."""
    return tuple(rec_type for rec_type, owner in TYPE_DOMAINS.items() if owner == domain)


@dataclass(frozen=True)
class RecommendationTarget:
    """Entity a recommendation is about."""

    kind: TargetKind
    entity_id: str | None = None
    entity_title: str | None = None


@dataclass(frozen=True)
class RecommendationCandidate:
    """Unvalidated recommendation proposed by one of the tiers."""

    type: RecommendationType
    target: RecommendationTarget
    action_kind: ActionKind
    title: str
    rationale: str
    score: float
    context: RecommendationContext = RecommendationContext.PROACTIVE_CHECK
    action_payload: str | None = None
    action_summary: str | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"score must be within [0, 1], got {self.score}")

    def to_dict(self) -> dict[str, Any]:
        """Serialize into a JSON-safe mapping."""
        return {
            "type": self.type.value,
            "target": {
                "kind": self.target.kind.value,
                "entity_id": self.target.entity_id,
                "entity_title": self.target.entity_title,
            },
            "action_kind": self.action_kind.value,
            "title": self.title,
            "rationale": self.rationale,
            "score": self.score,
            "context": self.context.value,
            "action_payload": self.action_payload,
            "action_summary": self.action_summary,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RecommendationCandidate":
        """Rebuild a candidate from ``to_dict`` output."""
        target = data["target"]
        return cls(
            type=RecommendationType(data["type"]),
            target=RecommendationTarget(
                kind=TargetKind(target["kind"]),
                entity_id=target.get("entity_id"),
                entity_title=target.get("entity_title"),
            ),
            action_kind=ActionKind(data["action_kind"]),
            title=data["title"],
            rationale=data["rationale"],
            score=float(data["score"]),
            context=RecommendationContext(
                data.get("context") or RecommendationContext.PROACTIVE_CHECK.value
            ),
            action_payload=data.get("action_payload"),
            action_summary=data.get("action_summary"),
        )
