"""Unit tests for the three-stage generative orchestrator."""

from __future__ import annotations

import json

import pytest

from config import OrchestratorConfig, RagConfig
from generation.orchestrator import (
    SELECTION_DISABLED,
    SELECTION_PIPELINE,
    GenerativeOrchestrator,
    issues_section,
    partition_plan,
    remove_conflicts,
)
from generation.rag import RagContextRetriever, RunCache
from generation.schemas import InterventionPlanItem
from llm import StageCallError
from recommendations import (
    ActionKind,
    GenerationDomain,
    RecommendationCandidate,
    RecommendationContext,
    RecommendationTarget,
    RecommendationType,
    TargetKind,
)
from services.vector_store import VectorSearchResult
from test.helpers.coach_builders import (
    FakeEmbeddingService,
    FakeVectorStore,
    ScriptedLLM,
    make_snapshot,
)

ASSESSMENT_JSON = json.dumps(
    {
        "capacityStatus": "balanced",
        "energyTrend": "stable",
        "overallMomentum": "steady",
        "keyStrengths": ["consistent mornings"],
        "keyRisks": [{"area": "habits", "detail": "evening run slipping", "severity": "High"}],
        "patterns": ["skips runs after meetings"],
        "goalProgressSummary": [],
        "contextNotes": "",
    }
)


def _strategy(max_recommendations: int, *target_types: str) -> str:
    return json.dumps(
        {
            "maxRecommendations": max_recommendations,
            "interventionPlan": [
                {"area": f"area {index}", "priority": 1, "reasoning": "", "targetType": target}
                for index, target in enumerate(target_types)
            ],
        }
    )


def _generated(*items: tuple[str, str, float]) -> str:
    return json.dumps(
        {
            "recommendations": [
                {
                    "type": rec_type,
                    "targetKind": "UserProfile",
                    "targetEntityId": None,
                    "targetEntityTitle": None,
                    "actionKind": "ReflectPrompt",
                    "title": title,
                    "rationale": "",
                    "score": score,
                    "actionPayload": None,
                }
                for rec_type, title, score in items
            ]
        }
    )


def _candidate(
    rec_type: RecommendationType,
    title: str,
    score: float,
    entity_id: str | None = None,
) -> RecommendationCandidate:
    return RecommendationCandidate(
        type=rec_type,
        target=RecommendationTarget(TargetKind.HABIT, entity_id),
        action_kind=ActionKind.CREATE,
        title=title,
        rationale="",
        score=score,
    )


async def _run(llm: ScriptedLLM, config: OrchestratorConfig | None = None, retriever=None):
    orchestrator = GenerativeOrchestrator(llm, retriever, config or OrchestratorConfig())
    return await orchestrator.generate(
        make_snapshot(), RecommendationContext.PROACTIVE_CHECK, RunCache()
    )


async def test_malformed_assessment_stops_the_pipeline() -> None:
    """Ensure an invalid Stage 1 response makes no further calls."""
    llm = ScriptedLLM({"situational_assessment": "{not json"})

    result = await _run(llm)

    assert result.candidates == ()
    assert result.selection_method == "Stage1-Failed"
    assert llm.calls == ["situational_assessment"]
    assert result.generative_calls == 1
    assert result.trace.failures[0].stage == "Stage1"


async def test_strategy_failure_reports_stage_two() -> None:
    """Ensure a failed Stage 2 call ends the run after two calls."""
    llm = ScriptedLLM(
        {
            "situational_assessment": ASSESSMENT_JSON,
            "recommendation_strategy": StageCallError("empty completion"),
        }
    )

    result = await _run(llm)

    assert result.selection_method == "Stage2-Failed"
    assert result.trace.assessment is not None
    assert result.trace.failures[0].reason == "empty completion"
    assert llm.calls == ["situational_assessment", "recommendation_strategy"]


async def test_plan_without_known_types_fails_stage_three() -> None:
    """Ensure a plan that maps to no domain yields a Stage 3 failure."""
    llm = ScriptedLLM(
        {
            "situational_assessment": ASSESSMENT_JSON,
            "recommendation_strategy": _strategy(3, "MysteryType"),
        }
    )

    result = await _run(llm)

    assert result.selection_method == "Stage3-Failed"
    assert result.generative_calls == 2


async def test_full_pipeline_ranks_and_truncates_to_budget() -> None:
    """Ensure domain output is merged, ranked and cut to the strategy budget."""
    llm = ScriptedLLM(
        {
            "situational_assessment": ASSESSMENT_JSON,
            "recommendation_strategy": _strategy(
                2, "HabitModeSuggestion", "NextBestAction"
            ),
            "domain_generation_habit": _generated(
                ("HabitModeSuggestion", "Scale the run down", 0.6),
            ),
            "domain_generation_task": _generated(
                ("NextBestAction", "Finish the report", 0.9),
                ("ScheduleAdjustmentSuggestion", "Move the dentist", 75),
            ),
        }
    )

    result = await _run(llm)

    assert result.selection_method == SELECTION_PIPELINE
    assert [candidate.title for candidate in result.candidates] == [
        "Finish the report",
        "Move the dentist",
    ]
    assert result.generative_calls == 4
    assert set(result.trace.domain_candidates) == {"Habit", "Task"}
    assert sorted(llm.calls[2:]) == ["domain_generation_habit", "domain_generation_task"]


async def test_one_failed_domain_is_tolerated() -> None:
    """Ensure a single domain failure keeps the other domains' output."""
    llm = ScriptedLLM(
        {
            "situational_assessment": ASSESSMENT_JSON,
            "recommendation_strategy": _strategy(
                5, "HabitModeSuggestion", "NextBestAction"
            ),
            "domain_generation_habit": RuntimeError("provider exploded"),
            "domain_generation_task": _generated(("NextBestAction", "Finish the report", 0.9)),
        }
    )

    result = await _run(llm)

    assert result.selection_method == SELECTION_PIPELINE
    assert len(result.candidates) == 1
    assert result.trace.failures[0].stage == "Stage3:Habit"


async def test_all_failed_domains_fail_stage_three() -> None:
    """Ensure the run fails when every domain fails."""
    llm = ScriptedLLM(
        {
            "situational_assessment": ASSESSMENT_JSON,
            "recommendation_strategy": _strategy(5, "HabitModeSuggestion"),
            "domain_generation_habit": '{"items": []}',
        }
    )

    result = await _run(llm)

    assert result.selection_method == "Stage3-Failed"
    assert result.candidates == ()


async def test_plan_items_are_capped() -> None:
    """Ensure plan items beyond the configured limit are not generated."""
    llm = ScriptedLLM(
        {
            "situational_assessment": ASSESSMENT_JSON,
            "recommendation_strategy": _strategy(
                5, "NextBestAction", "HabitModeSuggestion", "ProjectStuckFix"
            ),
            "domain_generation_task": _generated(("NextBestAction", "Do it", 0.5)),
        }
    )

    result = await _run(llm, OrchestratorConfig(max_plan_items=1))

    assert llm.calls[2:] == ["domain_generation_task"]
    assert result.generative_calls == 3


async def test_budget_is_capped_by_configuration() -> None:
    """Ensure the configured cap overrides a larger strategy budget."""
    llm = ScriptedLLM(
        {
            "situational_assessment": ASSESSMENT_JSON,
            "recommendation_strategy": _strategy(10, "NextBestAction"),
            "domain_generation_task": _generated(
                ("NextBestAction", "One", 0.9),
                ("TaskBreakdownSuggestion", "Two", 0.8),
                ("TaskEditSuggestion", "Three", 0.7),
            ),
        }
    )

    result = await _run(llm, OrchestratorConfig(max_recommendations_cap=2))

    assert [candidate.title for candidate in result.candidates] == ["One", "Two"]


async def test_disabled_orchestrator_makes_no_calls() -> None:
    """Ensure a disabled Tier 2 returns immediately."""
    llm = ScriptedLLM({})

    result = await _run(llm, OrchestratorConfig(enabled=False))

    assert result.selection_method == SELECTION_DISABLED
    assert llm.calls == []


async def test_retrieved_context_is_traced() -> None:
    """Ensure retrieval contexts for each stage are kept in the trace."""
    store = FakeVectorStore([VectorSearchResult("Habit", "habit-1", "Evening run", 0.9)])
    retriever = RagContextRetriever(FakeEmbeddingService(), store, RagConfig())
    llm = ScriptedLLM(
        {
            "situational_assessment": ASSESSMENT_JSON,
            "recommendation_strategy": _strategy(3, "HabitModeSuggestion"),
            "domain_generation_habit": _generated(("HabitModeSuggestion", "Scale down", 0.7)),
        }
    )

    result = await _run(llm, retriever=retriever)

    stages = [rag.stage.value for rag in result.trace.rag_contexts]
    assert stages == ["Assessment", "Strategy", "Generation"]
    trace = result.trace.to_dict()
    assert trace["rag_contexts"][2]["domain"] == "Habit"
    assert len(trace["calls"]) == 3


def test_partition_plan_groups_by_domain() -> None:
    """Ensure plan items are grouped by the domain owning their type."""
    plan = [
        InterventionPlanItem(area="a", target_type="habitmodesuggestion"),
        InterventionPlanItem(area="b", target_type="CheckInConsistencyNudge"),
        InterventionPlanItem(area="c", target_type="Nonsense"),
        InterventionPlanItem(area="d", target_type="NextBestAction"),
    ]

    grouped = partition_plan(plan)

    assert [item.area for item in grouped[GenerationDomain.HABIT]] == ["a"]
    assert [item.area for item in grouped[GenerationDomain.EXPERIMENT]] == ["b"]
    assert [item.area for item in grouped[GenerationDomain.TASK]] == ["d"]


def test_remove_conflicts_keeps_highest_scored_duplicate() -> None:
    """Ensure duplicate type and target pairs keep the best candidate."""
    low = _candidate(RecommendationType.HABIT_EDIT_SUGGESTION, "Edit low", 0.4, "habit-1")
    high = _candidate(RecommendationType.HABIT_EDIT_SUGGESTION, "Edit high", 0.8, "habit-1")
    other = _candidate(RecommendationType.HABIT_EDIT_SUGGESTION, "Edit other", 0.5, "habit-2")

    kept = remove_conflicts([low, high, other])

    assert [candidate.title for candidate in kept] == ["Edit high", "Edit other"]


def test_nudge_and_check_in_experiment_are_exclusive() -> None:
    """Ensure a check-in nudge and a check-in experiment never both survive."""
    nudge = _candidate(RecommendationType.CHECK_IN_CONSISTENCY_NUDGE, "Check in daily", 0.9)
    experiment = _candidate(
        RecommendationType.EXPERIMENT_RECOMMENDATION, "Experiment: morning check-in", 0.7
    )

    kept = remove_conflicts([experiment, nudge])

    assert kept == [nudge]


def test_habit_and_experiment_for_same_behavior_are_exclusive() -> None:
    """Ensure the same behavior is not suggested as both habit and experiment."""
    habit = _candidate(
        RecommendationType.HABIT_FROM_LEAD_METRIC_SUGGESTION, "Create daily walking habit", 0.6
    )
    experiment = _candidate(
        RecommendationType.EXPERIMENT_RECOMMENDATION, "Experiment: walking after lunch", 0.8
    )
    unrelated = _candidate(
        RecommendationType.HABIT_FROM_LEAD_METRIC_SUGGESTION, "Create reading habit", 0.5
    )

    kept = remove_conflicts([habit, experiment, unrelated])

    assert [candidate.title for candidate in kept] == [
        "Experiment: walking after lunch",
        "Create reading habit",
    ]


@pytest.mark.parametrize(
    ("reason", "expected"),
    [(None, ""), ("2 rules triggered", "## Detected Issues\nEscalation reason: 2 rules triggered\n")],
)
def test_issues_section(reason, expected) -> None:
    """Ensure the issues section is only rendered when there is something to say."""
    assert issues_section((), reason) == expected
