"""Structured outputs of the assessment and strategy stages."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MAX_PLAN_ITEMS = 8
MAX_RECOMMENDATIONS = 10


class CapacityStatus(str, Enum):
    """How loaded the user currently is."""

    OVERLOADED = "overloaded"
    STRETCHED = "stretched"
    BALANCED = "balanced"
    UNDERLOADED = "underloaded"


class EnergyTrend(str, Enum):
    """Direction of recent check-in energy."""

    DECLINING = "declining"
    STABLE = "stable"
    IMPROVING = "improving"


class Momentum(str, Enum):
    """Progress velocity toward goals."""

    STALLED = "stalled"
    SLOWING = "slowing"
    STEADY = "steady"
    ACCELERATING = "accelerating"


class RiskSeverity(str, Enum):
    """Severity of an identified risk."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class _StageModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class KeyRisk(_StageModel):
    """A risk the assessment stage identified."""

    area: str
    detail: str
    severity: RiskSeverity

    @field_validator("severity", mode="before")
    @classmethod
    def _lower_severity(cls, value: object) -> object:
        return value.lower() if isinstance(value, str) else value


class GoalProgress(_StageModel):
    """Momentum and bottleneck of one active goal."""

    goal_title: str
    momentum: Momentum
    bottleneck: str

    @field_validator("momentum", mode="before")
    @classmethod
    def _lower_momentum(cls, value: object) -> object:
        return value.lower() if isinstance(value, str) else value


class SituationalAssessment(_StageModel):
    """Stage 1 output: a holistic read of the user's situation."""

    capacity_status: CapacityStatus
    energy_trend: EnergyTrend
    overall_momentum: Momentum
    key_strengths: tuple[str, ...] = ()
    key_risks: tuple[KeyRisk, ...] = ()
    patterns: tuple[str, ...] = ()
    goal_progress_summary: tuple[GoalProgress, ...] = ()
    context_notes: str = ""

    @field_validator("capacity_status", "energy_trend", "overall_momentum", mode="before")
    @classmethod
    def _lower_enum(cls, value: object) -> object:
        return value.lower() if isinstance(value, str) else value


class InterventionPlanItem(_StageModel):
    """One planned intervention the generation stage should realise."""

    area: str
    priority: int = Field(default=3, ge=1)
    reasoning: str = ""
    target_type: str
    target_entity_ids: tuple[str, ...] | None = None


class RecommendationStrategy(_StageModel):
    """Stage 2 output: what to generate and how many recommendations to allow."""

    max_recommendations: int = Field(..., ge=1, le=MAX_RECOMMENDATIONS)
    intervention_plan: tuple[InterventionPlanItem, ...] = ()

    @field_validator("intervention_plan", mode="before")
    @classmethod
    def _bound_plan(cls, value: object) -> object:
        if isinstance(value, (list, tuple)):
            return list(value)[:MAX_PLAN_ITEMS]
        return value

    @field_validator("max_recommendations", mode="before")
    @classmethod
    def _clamp_budget(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return min(max(value, 1), MAX_RECOMMENDATIONS)
        return value
