"""Retrieval-augmented context for the generative stages.

Each stage builds a keyword-rich query from what it already knows, embeds it
(once per run, via :class:`RunCache`), and searches the user's vector index.
Retrieval is advisory: any timeout or error yields ``None`` and the stage
continues without context.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from assessment.snapshot import GoalStatus, UserStateSnapshot
from config import RagConfig, RagStageConfig, settings
from generation.schemas import InterventionPlanItem, SituationalAssessment
from recommendations import GenerationDomain, RecommendationContext
from services.embeddings import EmbeddingService
from services.vector_store import VectorStore

logger = logging.getLogger(__name__)

LOW_ENERGY = 2.5
HIGH_ENERGY = 3.5
OVERLOADED_MINUTES = 360
LIGHT_MINUTES = 60
LOW_ADHERENCE = 0.5
HIGH_ADHERENCE = 0.8
WORD_BOUNDARY_RATIO = 0.7

_CONTEXT_PHRASES = {
    RecommendationContext.MORNING_CHECK_IN: "morning check-in planning today",
    RecommendationContext.EVENING_CHECK_IN: "evening reflection review",
    RecommendationContext.WEEKLY_REVIEW: "weekly review trends patterns",
    RecommendationContext.DRIFT_ALERT: "drift deviation off-track",
    RecommendationContext.PROACTIVE_CHECK: "proactive assessment improvement",
}

_DOMAIN_KEYWORDS = {
    GenerationDomain.TASK: "task scheduling priority defer breakdown next action",
    GenerationDomain.HABIT: "habit mode scale adherence streak routine consistency",
    GenerationDomain.EXPERIMENT: "experiment hypothesis behavioral test trial outcome learning",
    GenerationDomain.GOAL_METRIC: "goal metric scoreboard lead lag constraint target tracking",
    GenerationDomain.PROJECT: "project stuck next action milestone progress blocked",
}


class RagStage(str, Enum):
    """Pipeline stage a context was retrieved for."""

    ASSESSMENT = "Assessment"
    STRATEGY = "Strategy"
    GENERATION = "Generation"
    RELEVANCE = "Relevance"


class RunCache:
    """Embedding cache owned by a single pipeline run.

    Keys are exact query texts. A new cache must be created per run and never
    shared between users.
    """

    def __init__(self) -> None:
        self._vectors: dict[str, list[float]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, text: str) -> list[float] | None:
        vector = self._vectors.get(text)
        if vector is None:
            self.misses += 1
        else:
            self.hits += 1
        return vector

    def put(self, text: str, vector: list[float]) -> None:
        self._vectors[text] = vector

    def __len__(self) -> int:
        return len(self._vectors)


@dataclass(frozen=True)
class RagContextItem:
    """A retrieved historical item."""

    entity_type: str
    entity_id: str
    text: str
    similarity: float


@dataclass(frozen=True)
class RagContext:
    """Items retrieved for one stage."""

    stage: RagStage
    query: str
    items: tuple[RagContextItem, ...] = ()
    latency_ms: int = 0
    domain: str | None = None

    def to_prompt_section(self) -> str:
        """Render the context as a prompt section, or an empty string."""
        if not self.items:
            return ""
        lines = ["## Relevant History (semantic search)"]
        for item in self.items:
            lines.append(
                f"- [{item.entity_type} {item.entity_id}] (similarity {item.similarity:.2f}) {item.text}"
            )
        return "\n".join(lines) + "\n"


def truncate_text(text: str, max_length: int) -> str:
    """Truncate ``text`` to ``max_length`` characters, preferring a word boundary."""
    if not text or len(text) <= max_length:
        return text
    truncated = text[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length * WORD_BOUNDARY_RATIO:
        return truncated[:last_space] + "..."
    return truncated + "..."


def humanize_context(context: RecommendationContext) -> str:
    return _CONTEXT_PHRASES.get(context, "general assessment")


def build_assessment_query(snapshot: UserStateSnapshot, context: RecommendationContext) -> str:
    """Build the assessment-stage query from energy, capacity, habits and goals."""
    parts = [humanize_context(context)]
    recent = sorted(snapshot.check_ins, key=lambda item: item.check_in_date, reverse=True)[:3]
    energies = [item.energy_level for item in recent if item.energy_level is not None]
    if energies:
        average = sum(energies) / len(energies)
        if average < LOW_ENERGY:
            parts.append("low energy fatigue tired depleted burnout")
        elif average > HIGH_ENERGY:
            parts.append("high energy motivated productive momentum")
        else:
            parts.append("moderate energy stable balanced")

    scheduled_minutes = sum(
        task.estimated_minutes or 0
        for task in snapshot.tasks
        if task.scheduled_date == snapshot.today
    )
    if scheduled_minutes > OVERLOADED_MINUTES:
        parts.append("overloaded heavy workload capacity overwhelmed")
    elif scheduled_minutes < LIGHT_MINUTES:
        parts.append("light day available capacity underutilized")

    low = [habit for habit in snapshot.habits if habit.adherence_7day < LOW_ADHERENCE]
    if low:
        parts.append("habit adherence struggle slipping")
        parts.extend(habit.title for habit in low[:2])
    if any(habit.adherence_7day >= HIGH_ADHERENCE for habit in snapshot.habits):
        parts.append("consistent streak working")

    active_goals = [goal for goal in snapshot.goals if goal.status == GoalStatus.ACTIVE]
    parts.extend(goal.title for goal in active_goals[:3])

    if snapshot.check_in_streak == 0:
        parts.append("check-in gap missed")
    elif snapshot.check_in_streak >= 7:
        parts.append("consistent check-in routine")
    return " ".join(parts).strip()


def build_strategy_query(assessment: SituationalAssessment, context: RecommendationContext) -> str:
    """Build the strategy-stage query from the assessment's risks and patterns."""
    parts = [
        humanize_context(context),
        assessment.capacity_status.value,
        f"{assessment.overall_momentum.value} momentum",
        "successful accepted effective what worked",
        "dismissed rejected failed avoided",
    ]
    for risk in assessment.key_risks[:3]:
        parts.extend((risk.area, risk.detail))
    parts.extend(assessment.patterns[:3])
    for goal in assessment.goal_progress_summary[:2]:
        if goal.bottleneck:
            parts.extend((goal.goal_title, goal.bottleneck))
    parts.extend(assessment.key_strengths[:2])
    return " ".join(parts).strip()


def _target_titles(snapshot: UserStateSnapshot, domain: GenerationDomain, items: Sequence[InterventionPlanItem]) -> list[str]:
    titles_by_id: dict[str, str] = {}
    if domain == GenerationDomain.TASK:
        titles_by_id = {task.id: task.title for task in snapshot.tasks}
    elif domain == GenerationDomain.HABIT:
        titles_by_id = {habit.id: habit.title for habit in snapshot.habits}
    elif domain == GenerationDomain.GOAL_METRIC:
        titles_by_id = {goal.id: goal.title for goal in snapshot.goals}
    elif domain == GenerationDomain.PROJECT:
        titles_by_id = {project.id: project.title for project in snapshot.projects}
    ids = [entity_id for item in items for entity_id in (item.target_entity_ids or ())]
    return [titles_by_id[entity_id] for entity_id in ids[:3] if entity_id in titles_by_id]


def build_generation_query(
    domain: GenerationDomain,
    assessment: SituationalAssessment,
    items: Sequence[InterventionPlanItem],
    snapshot: UserStateSnapshot,
) -> str:
    """Build a domain generation query from its intervention items."""
    parts = [_DOMAIN_KEYWORDS[domain]]
    if domain == GenerationDomain.HABIT:
        parts.append(f"{assessment.energy_trend.value} energy")
    if domain == GenerationDomain.EXPERIMENT:
        parts.extend(assessment.patterns[:3])
    for item in items[:2]:
        parts.extend((item.area, item.reasoning))
    parts.extend(_target_titles(snapshot, domain, items))
    if domain == GenerationDomain.TASK:
        parts.append(f"{assessment.capacity_status.value} capacity")
        if any(task.reschedule_count > 2 for task in snapshot.tasks):
            parts.append("rescheduled deferred stuck blocked")
    elif domain == GenerationDomain.HABIT:
        if any(habit.adherence_7day < LOW_ADHERENCE for habit in snapshot.habits):
            parts.append("struggling dropping slipping")
    elif domain == GenerationDomain.EXPERIMENT:
        parts.append("completed successful effective worked failed inconclusive")
    elif domain == GenerationDomain.GOAL_METRIC:
        for progress in assessment.goal_progress_summary[:2]:
            parts.extend((progress.goal_title, progress.bottleneck))
    return " ".join(part for part in parts if part).strip()


class RagContextRetriever:
    """Embeds stage queries and searches the user's vector index."""

    def __init__(
        self,
        embedding_service: EmbeddingService,
        vector_store: VectorStore,
        config: RagConfig | None = None,
    ) -> None:
        self._embeddings = embedding_service
        self._store = vector_store
        self._config = config or settings.rag

    async def for_assessment(
        self,
        snapshot: UserStateSnapshot,
        context: RecommendationContext,
        cache: RunCache,
    ) -> RagContext | None:
        query = build_assessment_query(snapshot, context)
        return await self.retrieve(
            snapshot.user_id, query, RagStage.ASSESSMENT, self._config.assessment, cache
        )

    async def for_strategy(
        self,
        user_id: str,
        assessment: SituationalAssessment,
        context: RecommendationContext,
        cache: RunCache,
    ) -> RagContext | None:
        query = build_strategy_query(assessment, context)
        return await self.retrieve(
            user_id, query, RagStage.STRATEGY, self._config.strategy, cache
        )

    async def for_generation(
        self,
        domain: GenerationDomain,
        assessment: SituationalAssessment,
        items: Sequence[InterventionPlanItem],
        snapshot: UserStateSnapshot,
        cache: RunCache,
    ) -> RagContext | None:
        query = build_generation_query(domain, assessment, items, snapshot)
        return await self.retrieve(
            snapshot.user_id,
            query,
            RagStage.GENERATION,
            self._config.for_domain(domain.value),
            cache,
            domain=domain.value,
        )

    async def retrieve(
        self,
        user_id: str,
        query: str,
        stage: RagStage,
        stage_config: RagStageConfig,
        cache: RunCache,
        *,
        min_similarity: float | None = None,
        domain: str | None = None,
    ) -> RagContext | None:
        """Search the user's index; returns None when disabled, empty, timed out or failed."""
        if not self._config.enabled:
            return None
        if not query.strip():
            logger.debug("No %s query generated, skipping retrieval", stage.value)
            return None
        threshold = (
            self._config.similarity_threshold if min_similarity is None else min_similarity
        )
        started = time.monotonic()
        try:
            items = await asyncio.wait_for(
                self._search(user_id, query, stage_config, cache, threshold),
                timeout=self._config.timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "RAG retrieval timed out for %s after %sms, continuing without context",
                stage.value,
                self._config.timeout_ms,
            )
            return None
        except Exception as exc:
            logger.warning(
                "RAG retrieval failed for %s, continuing without context: %s", stage.value, exc
            )
            return None
        latency_ms = int((time.monotonic() - started) * 1000)
        logger.debug(
            "RAG retrieval for %s: %s item(s) in %sms (query %s chars)",
            stage.value,
            len(items),
            latency_ms,
            len(query),
        )
        return RagContext(
            stage=stage, query=query, items=tuple(items), latency_ms=latency_ms, domain=domain
        )

    async def _search(
        self,
        user_id: str,
        query: str,
        stage_config: RagStageConfig,
        cache: RunCache,
        threshold: float,
    ) -> list[RagContextItem]:
        vector = cache.get(query)
        if vector is None:
            vector = await self._embeddings.embed(query)
            cache.put(query, vector)
        results = await self._store.search(
            user_id,
            vector,
            stage_config.top_k,
            stage_config.entity_types or None,
        )
        max_length = self._config.max_text_length
        return [
            RagContextItem(
                entity_type=result.entity_type,
                entity_id=result.entity_id,
                text=truncate_text(result.text, max_length),
                similarity=result.score,
            )
            for result in results
            if result.score >= threshold
        ]
