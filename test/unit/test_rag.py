"""Unit tests for retrieval-augmented stage context."""

from __future__ import annotations

import logging

from assessment.snapshot import (
    CheckInSnapshot,
    CheckInType,
    HabitSnapshot,
    HabitStatus,
)
from config import RagConfig, RagStageConfig
from generation.rag import (
    RagContextRetriever,
    RagStage,
    RunCache,
    build_assessment_query,
    build_generation_query,
    truncate_text,
)
from generation.schemas import InterventionPlanItem, SituationalAssessment
from recommendations import GenerationDomain, RecommendationContext
from services.vector_store import VectorSearchResult
from test.helpers.coach_builders import (
    FakeEmbeddingService,
    FakeVectorStore,
    days_ago,
    make_snapshot,
)

ASSESSMENT = SituationalAssessment.model_validate(
    {
        "capacityStatus": "Stretched",
        "energyTrend": "declining",
        "overallMomentum": "slowing",
        "patterns": ["skips workouts after late meetings"],
    }
)


def _retriever(embeddings=None, store=None, **config) -> RagContextRetriever:
    return RagContextRetriever(
        embeddings or FakeEmbeddingService(),
        store or FakeVectorStore(),
        RagConfig(**config),
    )


def test_truncate_text_prefers_word_boundaries() -> None:
    """Ensure long text is cut at a late space and marked with an ellipsis."""
    assert truncate_text("short", 10) == "short"
    assert truncate_text("alpha beta gamma delta", 18) == "alpha beta gamma..."
    assert truncate_text("abcdefghij", 5) == "abcde..."
    assert truncate_text("a bcdefghijkl", 10) == "a bcdefghi..."
    assert truncate_text("", 3) == ""


async def test_run_cache_embeds_each_query_once() -> None:
    """Ensure repeated queries in a run reuse the cached embedding."""
    embeddings = FakeEmbeddingService()
    retriever = _retriever(embeddings)
    cache = RunCache()
    stage = RagStageConfig(top_k=3)

    await retriever.retrieve("user-1", "habit streak", RagStage.ASSESSMENT, stage, cache)
    await retriever.retrieve("user-1", "habit streak", RagStage.STRATEGY, stage, cache)

    assert embeddings.calls == ["habit streak"]
    assert cache.hits == 1
    assert len(cache) == 1


async def test_retrieval_filters_by_similarity_and_truncates() -> None:
    """Ensure low-similarity hits are dropped and long text is shortened."""
    store = FakeVectorStore(
        [
            VectorSearchResult("Habit", "habit-1", "word " * 100, 0.82),
            VectorSearchResult("Task", "task-1", "Unrelated", 0.31),
        ]
    )
    retriever = _retriever(store=store, max_text_length=40)

    context = await retriever.retrieve(
        "user-1",
        "habit",
        RagStage.ASSESSMENT,
        RagStageConfig(top_k=5, entity_types=["Habit", "Task"]),
        RunCache(),
    )

    assert [item.entity_id for item in context.items] == ["habit-1"]
    assert context.items[0].text.endswith("...")
    assert len(context.items[0].text) <= 43
    assert store.searches == [{"user_id": "user-1", "top_k": 5, "entity_types": ["Habit", "Task"]}]
    assert "habit-1" in context.to_prompt_section()


async def test_retrieval_timeout_returns_none(caplog) -> None:
    """Ensure a slow embedding backend degrades to no context."""
    retriever = _retriever(FakeEmbeddingService(delay=0.5), timeout_ms=10)

    with caplog.at_level(logging.WARNING, logger="generation.rag"):
        context = await retriever.retrieve(
            "user-1", "habit", RagStage.STRATEGY, RagStageConfig(), RunCache()
        )

    assert context is None
    assert "timed out" in caplog.text


async def test_retrieval_failure_returns_none() -> None:
    """Ensure embedding errors do not propagate."""
    retriever = _retriever(FakeEmbeddingService(fail=True))

    context = await retriever.retrieve(
        "user-1", "habit", RagStage.ASSESSMENT, RagStageConfig(), RunCache()
    )

    assert context is None


async def test_disabled_retrieval_skips_embedding() -> None:
    """Ensure no embedding is requested when retrieval is disabled."""
    embeddings = FakeEmbeddingService()
    retriever = _retriever(embeddings, enabled=False)

    context = await retriever.retrieve(
        "user-1", "habit", RagStage.ASSESSMENT, RagStageConfig(), RunCache()
    )

    assert context is None
    assert embeddings.calls == []


async def test_generation_uses_domain_entity_types() -> None:
    """Ensure domain retrieval applies the domain's entity type filter."""
    store = FakeVectorStore()
    retriever = _retriever(store=store)
    items = [InterventionPlanItem(area="habits", target_type="Habit", reasoning="slipping")]

    context = await retriever.for_generation(
        GenerationDomain.HABIT, ASSESSMENT, items, make_snapshot(), RunCache()
    )

    assert context.domain == "Habit"
    assert context.items == ()
    assert context.to_prompt_section() == ""
    assert store.searches[0]["entity_types"] == ["Habit", "Recommendation", "Experiment"]


def test_assessment_query_reflects_energy_and_habits() -> None:
    """Ensure the assessment query captures energy, struggles and check-in gaps."""
    snapshot = make_snapshot(
        check_ins=(
            CheckInSnapshot("ci-1", days_ago(0), CheckInType.MORNING, energy_level=2),
            CheckInSnapshot("ci-2", days_ago(1), CheckInType.MORNING, energy_level=1),
        ),
        habits=(
            HabitSnapshot("habit-1", "Evening run", HabitStatus.ACTIVE, adherence_7day=0.2),
        ),
    )

    query = build_assessment_query(snapshot, RecommendationContext.MORNING_CHECK_IN)

    assert query.startswith("morning check-in planning today")
    assert "low energy" in query
    assert "Evening run" in query
    assert "light day" in query
    assert query.endswith("check-in gap missed")


def test_generation_query_includes_target_titles() -> None:
    """Ensure plan targets resolve to entity titles in the query."""
    snapshot = make_snapshot(
        habits=(HabitSnapshot("habit-1", "Evening run", HabitStatus.ACTIVE),)
    )
    items = [
        InterventionPlanItem(
            area="habit consistency",
            target_type="Habit",
            reasoning="missed three days",
            target_entity_ids=("habit-1", "habit-missing"),
        )
    ]

    query = build_generation_query(GenerationDomain.HABIT, ASSESSMENT, items, snapshot)

    assert "declining energy" in query
    assert "habit consistency" in query
    assert "Evening run" in query
