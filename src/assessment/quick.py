"""Tier 1: heuristic relevance, delta and urgency scoring."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Sequence

from assessment.delta import StateDeltaCalculator, StateDeltaSummary
from assessment.rules import RuleEvaluationResult, Severity
from assessment.snapshot import UserStateSnapshot
from config import AssessmentConfig, RagStageConfig, settings
from generation.rag import RagContextRetriever, RagStage, RunCache
from models import SignalPriority
from signals.queue import AcquiredSignal
from signals.registry import humanize_event_type

logger = logging.getLogger(__name__)

SEVERITY_URGENCY = {
    Severity.CRITICAL: 0.4,
    Severity.HIGH: 0.3,
    Severity.MEDIUM: 0.15,
    Severity.LOW: 0.05,
}
HIGH_URGENCY = 0.7
SIGNIFICANT_DELTA = 0.3
MISSED_ITEMS_ESCALATION = 3


@dataclass(frozen=True)
class RelevantContextItem:
    """Historical item that matched the current situation."""

    entity_type: str
    entity_id: str
    text: str
    similarity: float


@dataclass(frozen=True)
class QuickAssessmentResult:
    """Scores and escalation decision for Tier 1."""

    relevance_score: float
    delta_score: float
    urgency_score: float
    combined_score: float
    should_escalate: bool
    escalation_reason: str | None
    relevant_context: tuple[RelevantContextItem, ...]
    delta: StateDeltaSummary


def compute_urgency(
    signals: Sequence[AcquiredSignal],
    tier0: RuleEvaluationResult,
) -> float:
    """Score urgency from signal priorities and Tier 0 findings."""
    urgent = sum(1 for signal in signals if signal.priority == SignalPriority.URGENT)
    window_aligned = sum(
        1 for signal in signals if signal.priority == SignalPriority.WINDOW_ALIGNED
    )
    score = min(0.2 * urgent, 0.4)
    score += min(0.05 * window_aligned, 0.1)
    # A run with no triggered rule has no severity and contributes nothing.
    if tier0.max_severity is not None:
        score += SEVERITY_URGENCY[tier0.max_severity]
    score += min(0.05 * len(tier0.triggered_rules), 0.2)
    return min(score, 1.0)


def compute_relevance(similarities: Sequence[float]) -> float:
    """Position-weighted mean similarity plus a small bonus for result count."""
    if not similarities:
        return 0.0
    weights = [1.0 / (index + 1) for index in range(len(similarities))]
    weighted = sum(similarity * weight for similarity, weight in zip(similarities, weights))
    score = weighted / sum(weights)
    score += min(len(similarities) / 10, 0.2)
    return min(score, 1.0)


def combine_scores(
    relevance: float,
    delta: float,
    urgency: float,
    config: AssessmentConfig | None = None,
) -> float:
    """Weighted combination of the three Tier 1 scores."""
    config = config or settings.assessment
    combined = (
        config.relevance_weight * relevance
        + config.delta_weight * delta
        + config.urgency_weight * urgency
    )
    return min(max(combined, 0.0), 1.0)


def evaluate_escalation(
    *,
    combined_score: float,
    threshold: float,
    tier0_escalate: bool,
    tier0_reason: str | None,
    max_severity: Severity | None,
    urgency_score: float,
    delta_score: float,
    missed_items: int,
) -> tuple[bool, str | None]:
    """Decide whether Tier 2 should run. The first matching reason wins."""
    if combined_score >= threshold:
        return True, f"Combined score {combined_score:.2f} exceeds threshold {threshold:.2f}"
    if tier0_escalate:
        return True, tier0_reason or "Tier 0 requested escalation"
    if max_severity == Severity.CRITICAL:
        return True, "Critical severity issue detected"
    if urgency_score > HIGH_URGENCY and delta_score > SIGNIFICANT_DELTA:
        return True, "High urgency with significant state changes"
    if missed_items >= MISSED_ITEMS_ESCALATION:
        return True, f"{missed_items} missed items detected"
    return False, None


def build_relevance_query(
    signals: Sequence[AcquiredSignal],
    tier0: RuleEvaluationResult,
) -> str:
    counts = Counter(signal.event_type for signal in signals)
    parts = [humanize_event_type(event_type) for event_type, _ in counts.most_common(5)]
    parts.extend(result.rule_name for result in tier0.triggered_rules[:3])
    parts.extend(
        candidate.target.entity_title
        for candidate in tier0.direct_recommendations[:3]
        if candidate.target.entity_title
    )
    return " ".join(parts).strip()


class QuickAssessment:
    """Combines relevance, delta and urgency into an escalation decision."""

    def __init__(
        self,
        retriever: RagContextRetriever | None,
        delta_calculator: StateDeltaCalculator,
        config: AssessmentConfig | None = None,
    ) -> None:
        self._retriever = retriever
        self._delta = delta_calculator
        self._config = config or settings.assessment

    async def assess(
        self,
        snapshot: UserStateSnapshot,
        signals: Sequence[AcquiredSignal],
        tier0: RuleEvaluationResult,
        cache: RunCache,
    ) -> QuickAssessmentResult:
        delta = self._delta.calculate(snapshot.user_id, snapshot, signals)
        urgency = compute_urgency(signals, tier0)
        context = await self._relevant_context(snapshot.user_id, signals, tier0, cache)
        relevance = compute_relevance([item.similarity for item in context])
        combined = combine_scores(relevance, delta.overall_delta_score, urgency, self._config)
        escalate, reason = evaluate_escalation(
            combined_score=combined,
            threshold=self._config.escalation_threshold,
            tier0_escalate=tier0.should_escalate,
            tier0_reason=tier0.escalation_reason,
            max_severity=tier0.max_severity,
            urgency_score=urgency,
            delta_score=delta.overall_delta_score,
            missed_items=delta.missed_items,
        )
        logger.info(
            "Tier 1 for user %s: relevance=%.2f delta=%.2f urgency=%.2f combined=%.2f escalate=%s",
            snapshot.user_id,
            relevance,
            delta.overall_delta_score,
            urgency,
            combined,
            escalate,
        )
        return QuickAssessmentResult(
            relevance_score=relevance,
            delta_score=delta.overall_delta_score,
            urgency_score=urgency,
            combined_score=combined,
            should_escalate=escalate,
            escalation_reason=reason,
            relevant_context=context,
            delta=delta,
        )

    async def _relevant_context(
        self,
        user_id: str,
        signals: Sequence[AcquiredSignal],
        tier0: RuleEvaluationResult,
        cache: RunCache,
    ) -> tuple[RelevantContextItem, ...]:
        if self._retriever is None:
            return ()
        query = build_relevance_query(signals, tier0)
        rag = await self._retriever.retrieve(
            user_id,
            query,
            RagStage.RELEVANCE,
            RagStageConfig(top_k=self._config.vector_top_k),
            cache,
            min_similarity=self._config.min_similarity,
        )
        if rag is None:
            return ()
        return tuple(
            RelevantContextItem(
                entity_type=item.entity_type,
                entity_id=item.entity_id,
                text=item.text,
                similarity=item.similarity,
            )
            for item in sorted(rag.items, key=lambda item: item.similarity, reverse=True)
        )
