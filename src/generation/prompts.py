"""Prompt text and response schemas for the three generative stages."""

from __future__ import annotations

import json
from typing import Any, Sequence

from assessment.snapshot import UserStateSnapshot
from generation.rag import RagContext
from generation.schemas import InterventionPlanItem, SituationalAssessment
from recommendations import (
    ActionKind,
    GenerationDomain,
    RecommendationContext,
    TargetKind,
    domain_types,
)

ASSESSMENT_SCHEMA_NAME = "situational_assessment"
STRATEGY_SCHEMA_NAME = "recommendation_strategy"
GENERATION_SCHEMA_NAME = "domain_generation"

_CONTEXT_INSTRUCTIONS = {
    RecommendationContext.MORNING_CHECK_IN: (
        "CONTEXT: Morning check-in. Focus on today's capacity, current energy level, "
        "what is scheduled, and whether the day looks feasible."
    ),
    RecommendationContext.EVENING_CHECK_IN: (
        "CONTEXT: Evening check-in. Focus on what was accomplished versus planned, "
        "patterns in missed items, and energy trajectory."
    ),
    RecommendationContext.WEEKLY_REVIEW: (
        "CONTEXT: Weekly review. Take a 7-day view of goal progress, habit adherence, "
        "capacity utilization and experiment outcomes."
    ),
    RecommendationContext.DRIFT_ALERT: (
        "CONTEXT: Drift alert. A key indicator deviated significantly. Focus on the root cause."
    ),
    RecommendationContext.PROACTIVE_CHECK: (
        "CONTEXT: Proactive background check. Assess every dimension and identify the "
        "highest-leverage area the user might be missing."
    ),
}

ASSESSMENT_SYSTEM_PROMPT = """\
You are a personal development analyst. Analyze the user's current state and
produce a structured situational assessment.

Evaluate:
1. Capacity: overloaded, stretched, balanced, or underloaded.
2. Energy trend from recent check-ins: declining, stable, or improving.
3. Overall momentum toward goals: stalled, slowing, steady, or accelerating.
4. Key strengths: what is working.
5. Key risks: what needs attention, each with a severity.
6. Patterns: recurring themes.
7. Goal progress: momentum and bottleneck for each active goal.

Be specific and reference actual numbers. Do NOT make recommendations.
"""

STRATEGY_SYSTEM_PROMPT = """\
You are a personal development strategist. You receive a situational assessment
and create an intervention plan.

1. Choose the few intervention areas that matter most right now.
2. For each, give a priority, your reasoning, a targetType (one of the valid
   recommendation types) and targetEntityIds when specific entities apply.
3. Set maxRecommendations between 1 and 10; 3 to 5 focused recommendations
   beat many scattered ones.

Be capacity-aware: an overloaded user needs less, not more. Suggest at most one
experiment per plan.
"""

GENERATION_SYSTEM_PROMPT = """\
You generate concrete {domain} recommendations for a personal development
system. Only produce recommendation types from this list: {types}.

Rules:
- Reference only entity ids that appear in the user state below.
- Use actionKind Create with a null targetEntityId for new entities.
- Scores are between 0 and 1.
- Put a short imperative summary in actionPayload._summary.
"""


def _nullable(schema: dict[str, Any]) -> dict[str, Any]:
    return {"anyOf": [schema, {"type": "null"}]}


ASSESSMENT_SCHEMA: dict[str, Any] = {
    "name": ASSESSMENT_SCHEMA_NAME,
    "strict": True,
    "schema": {
        "type": "object",
        "properties": {
            "capacityStatus": {
                "type": "string",
                "enum": ["overloaded", "stretched", "balanced", "underloaded"],
            },
            "energyTrend": {"type": "string", "enum": ["declining", "stable", "improving"]},
            "overallMomentum": {
                "type": "string",
                "enum": ["stalled", "slowing", "steady", "accelerating"],
            },
            "keyStrengths": {"type": "array", "items": {"type": "string"}},
            "keyRisks": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "area": {"type": "string"},
                        "detail": {"type": "string"},
                        "severity": {"type": "string", "enum": ["high", "medium", "low"]},
                    },
                    "required": ["area", "detail", "severity"],
                    "additionalProperties": False,
                },
            },
            "patterns": {"type": "array", "items": {"type": "string"}},
            "goalProgressSummary": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "goalTitle": {"type": "string"},
                        "momentum": {
                            "type": "string",
                            "enum": ["stalled", "slowing", "steady", "accelerating"],
                        },
                        "bottleneck": {"type": "string"},
                    },
                    "required": ["goalTitle", "momentum", "bottleneck"],
                    "additionalProperties": False,
                },
            },
            "contextNotes": {"type": "string"},
        },
        "required": [
            "capacityStatus",
            "energyTrend",
            "overallMomentum",
            "keyStrengths",
            "keyRisks",
            "patterns",
            "goalProgressSummary",
            "contextNotes",
        ],
        "additionalProperties": False,
    },
}

STRATEGY_SCHEMA: dict[str, Any] = {
    "name": STRATEGY_SCHEMA_NAME,
    "strict": True,
    "schema": {
        "type": "object",
        "properties": {
            "maxRecommendations": {"type": "integer"},
            "interventionPlan": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "area": {"type": "string"},
                        "priority": {"type": "integer"},
                        "reasoning": {"type": "string"},
                        "targetType": {"type": "string"},
                        "targetEntityIds": _nullable(
                            {"type": "array", "items": {"type": "string"}}
                        ),
                    },
                    "required": [
                        "area",
                        "priority",
                        "reasoning",
                        "targetType",
                        "targetEntityIds",
                    ],
                    "additionalProperties": False,
                },
            },
        },
        "required": ["maxRecommendations", "interventionPlan"],
        "additionalProperties": False,
    },
}


def generation_schema(domain: GenerationDomain) -> dict[str, Any]:
    """Response schema for one domain's generation call."""
    item = {
        "type": "object",
        "properties": {
            "type": {"type": "string", "enum": [rec.value for rec in domain_types(domain)]},
            "targetKind": {"type": "string", "enum": [kind.value for kind in TargetKind]},
            "targetEntityId": _nullable({"type": "string"}),
            "targetEntityTitle": _nullable({"type": "string"}),
            "actionKind": {"type": "string", "enum": [kind.value for kind in ActionKind]},
            "title": {"type": "string"},
            "rationale": {"type": "string"},
            "score": {"type": "number"},
            "actionPayload": _nullable({"type": "object"}),
        },
        "required": [
            "type",
            "targetKind",
            "targetEntityId",
            "targetEntityTitle",
            "actionKind",
            "title",
            "rationale",
            "score",
            "actionPayload",
        ],
        "additionalProperties": False,
    }
    return {
        "name": f"{GENERATION_SCHEMA_NAME}_{domain.value.lower()}",
        "schema": {
            "type": "object",
            "properties": {"recommendations": {"type": "array", "items": item}},
            "required": ["recommendations"],
            "additionalProperties": False,
        },
    }


def context_instructions(context: RecommendationContext) -> str:
    return _CONTEXT_INSTRUCTIONS.get(context, "CONTEXT: General assessment.")


def _with_rag(body: str, rag: RagContext | None) -> str:
    if rag is None or not rag.items:
        return body
    return f"{body}\n{rag.to_prompt_section()}"


def serialize_snapshot(snapshot: UserStateSnapshot) -> str:
    """Render the user state as compact prompt text."""
    lines = [
        f"# User State Snapshot (as of {snapshot.today.isoformat()})",
        f"Check-in streak: {snapshot.check_in_streak} days",
        "",
    ]
    if snapshot.profile is not None:
        profile = snapshot.profile
        lines.append("## User Profile")
        if profile.values:
            lines.append(f"Values: {', '.join(profile.values)}")
        if profile.roles:
            lines.append(f"Roles: {', '.join(profile.roles)}")
        if profile.constraints is not None:
            lines.append(
                f"Capacity: weekday {profile.constraints.max_planned_minutes_weekday}min, "
                f"weekend {profile.constraints.max_planned_minutes_weekend}min"
            )
        lines.append("")

    goals = snapshot.active_goals
    lines.append(f"## Goals ({len(goals)} active)")
    for goal in goals:
        metrics = ", ".join(metric.kind.value for metric in goal.metrics) or "none"
        deadline = goal.deadline.isoformat() if goal.deadline else "none"
        lines.append(
            f'- [{goal.id}] "{goal.title}" | Priority:{goal.priority} | Deadline:{deadline} | Metrics:{metrics}'
        )
    lines.append("")

    habits = snapshot.active_habits
    lines.append(f"## Habits ({len(habits)} active)")
    for habit in habits:
        lines.append(
            f'- [{habit.id}] "{habit.title}" | Mode:{habit.mode.value} | Streak:{habit.current_streak} '
            f"| Adherence7d:{round(habit.adherence_7day * 100)}% "
            f"| DueToday:{habit.is_scheduled_today} | DoneToday:{habit.is_completed_today}"
        )
    lines.append("")

    tasks = snapshot.open_tasks
    lines.append(f"## Tasks ({len(tasks)} open)")
    for task in tasks:
        due = task.due_date.isoformat() if task.due_date else "none"
        scheduled = task.scheduled_date.isoformat() if task.scheduled_date else "none"
        lines.append(
            f'- [{task.id}] "{task.title}" | Status:{task.status.value} | Priority:{task.priority} '
            f"| Due:{due} | Scheduled:{scheduled} | Est:{task.estimated_minutes or '?'}min "
            f"| Rescheduled:{task.reschedule_count}"
        )
    lines.append("")

    lines.append(f"## Projects ({len(snapshot.projects)})")
    for project in snapshot.projects:
        lines.append(
            f'- [{project.id}] "{project.title}" | Status:{project.status.value} '
            f"| Tasks:{project.completed_tasks}/{project.total_tasks} | Goal:{project.goal_id or 'none'}"
        )
    lines.append("")

    lines.append(f"## Experiments ({len(snapshot.experiments)})")
    for experiment in snapshot.experiments:
        lines.append(
            f'- [{experiment.id}] "{experiment.title}" | Status:{experiment.status.value} '
            f"| Hypothesis:{experiment.hypothesis or 'none'}"
        )
    lines.append("")

    recent = sorted(snapshot.check_ins, key=lambda item: item.check_in_date, reverse=True)[:7]
    lines.append(f"## Recent Check-ins ({len(recent)})")
    for check_in in recent:
        lines.append(
            f"- {check_in.check_in_date.isoformat()} {check_in.type.value} "
            f"| Energy:{check_in.energy_level if check_in.energy_level is not None else '?'}"
        )
    lines.append("")

    if snapshot.metric_definitions:
        lines.append(f"## Metrics ({len(snapshot.metric_definitions)})")
        for metric in snapshot.metric_definitions:
            lines.append(f'- [{metric.id}] "{metric.name}"')
        lines.append("")
    return "\n".join(lines)


def assessment_prompts(
    snapshot: UserStateSnapshot,
    context: RecommendationContext,
    rag: RagContext | None,
) -> tuple[str, str]:
    system = f"{ASSESSMENT_SYSTEM_PROMPT}\n{context_instructions(context)}\n"
    return system, _with_rag(serialize_snapshot(snapshot), rag)


def strategy_prompts(
    assessment: SituationalAssessment,
    snapshot: UserStateSnapshot,
    context: RecommendationContext,
    rag: RagContext | None,
) -> tuple[str, str]:
    types = ", ".join(rec.value for domain in GenerationDomain for rec in domain_types(domain))
    system = (
        f"{STRATEGY_SYSTEM_PROMPT}\nValid recommendation types: {types}\n\n"
        f"{context_instructions(context)}\n"
    )
    body = (
        "# Situational Assessment\n"
        f"{json.dumps(assessment.model_dump(mode='json', by_alias=True), indent=2)}\n\n"
        f"{serialize_snapshot(snapshot)}"
    )
    return system, _with_rag(body, rag)


def generation_prompts(
    domain: GenerationDomain,
    items: Sequence[InterventionPlanItem],
    assessment: SituationalAssessment,
    snapshot: UserStateSnapshot,
    rag: RagContext | None,
) -> tuple[str, str]:
    types = ", ".join(rec.value for rec in domain_types(domain))
    system = GENERATION_SYSTEM_PROMPT.format(domain=domain.value, types=types)
    plan = [item.model_dump(mode="json", by_alias=True) for item in items]
    body = (
        f"# Interventions for the {domain.value} domain\n"
        f"{json.dumps(plan, indent=2)}\n\n"
        f"# Assessment summary\n"
        f"Capacity: {assessment.capacity_status.value} | Energy: {assessment.energy_trend.value} "
        f"| Momentum: {assessment.overall_momentum.value}\n\n"
        f"{serialize_snapshot(snapshot)}"
    )
    return system, _with_rag(body, rag)
