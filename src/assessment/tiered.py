"""Runs the Tier 0 -> Tier 1 -> Tier 2 escalation ladder for one user batch."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Sequence

from assessment.quick import QuickAssessment, QuickAssessmentResult
from assessment.rules import RuleEngine, RuleEvaluationResult
from assessment.snapshot import UserStateSnapshot
from generation.orchestrator import GenerativeOrchestrator, OrchestrationResult
from generation.rag import RunCache
from generation.validator import CandidateValidator
from models import SignalPriority, WindowType
from recommendations import RecommendationCandidate, RecommendationContext
from signals.queue import AcquiredSignal
from signals.registry import EVENING_WINDOW_START, MORNING_WINDOW_START

logger = logging.getLogger(__name__)

TIER_RULES = 0
TIER_QUICK = 1
TIER_GENERATIVE = 2

SELECTION_RULES = "Tier0-Rules"
SELECTION_QUICK = "Tier1-Quick"


@dataclass(frozen=True)
class TierStatistics:
    """Per-run counters recorded in processing history."""

    rules_evaluated: int = 0
    rules_triggered: int = 0
    direct_recommendations: int = 0
    combined_score: float | None = None
    relevant_context_items: int = 0
    generative_calls: int = 0
    selection_method: str | None = None
    duration_ms: int = 0


@dataclass(frozen=True)
class TieredAssessmentOutcome:
    """Final tier reached, validated candidates and the per-tier results."""

    final_tier: int
    candidates: tuple[RecommendationCandidate, ...]
    context: RecommendationContext
    statistics: TierStatistics
    tier0: RuleEvaluationResult
    tier1: QuickAssessmentResult | None = None
    tier2: OrchestrationResult | None = None


def derive_context(signals: Sequence[AcquiredSignal]) -> RecommendationContext:
    """Pick the recommendation context implied by a signal batch."""
    event_types = {signal.event_type for signal in signals}
    if MORNING_WINDOW_START in event_types:
        return RecommendationContext.MORNING_CHECK_IN
    if EVENING_WINDOW_START in event_types:
        return RecommendationContext.EVENING_CHECK_IN
    if any(signal.window_type == WindowType.WEEKLY_REVIEW for signal in signals):
        return RecommendationContext.WEEKLY_REVIEW
    if any(signal.priority == SignalPriority.URGENT for signal in signals):
        return RecommendationContext.DRIFT_ALERT
    return RecommendationContext.PROACTIVE_CHECK


def _has_urgent(signals: Sequence[AcquiredSignal]) -> bool:
    return any(signal.priority == SignalPriority.URGENT for signal in signals)


class TieredAssessmentEngine:
    """Escalates from cheap rules to generative reasoning only when needed.

    Every candidate leaving the engine passes the validator, whatever tier
    produced it.
    """

    def __init__(
        self,
        rule_engine: RuleEngine,
        quick_assessment: QuickAssessment,
        orchestrator: GenerativeOrchestrator,
        validator: CandidateValidator | None = None,
    ) -> None:
        self._rules = rule_engine
        self._quick = quick_assessment
        self._orchestrator = orchestrator
        self._validator = validator or CandidateValidator()

    async def run(
        self,
        snapshot: UserStateSnapshot,
        signals: Sequence[AcquiredSignal],
    ) -> TieredAssessmentOutcome:
        started = time.monotonic()
        cache = RunCache()
        context = derive_context(signals)

        tier0 = self._rules.evaluate(snapshot, signals)
        direct = list(tier0.direct_recommendations)
        escalate = tier0.should_escalate or tier0.any_requires_escalation or _has_urgent(signals)
        if not escalate and direct:
            logger.info(
                "User %s resolved at Tier 0 with %s rule(s) triggered",
                snapshot.user_id,
                len(tier0.triggered_rules),
            )
            return self._outcome(
                TIER_RULES, direct, snapshot, context, started, tier0, selection=SELECTION_RULES
            )

        tier1 = await self._quick.assess(snapshot, signals, tier0, cache)
        if not tier1.should_escalate:
            logger.info(
                "User %s resolved at Tier 1 (combined=%.2f)",
                snapshot.user_id,
                tier1.combined_score,
            )
            return self._outcome(
                TIER_QUICK,
                direct,
                snapshot,
                context,
                started,
                tier0,
                tier1=tier1,
                selection=SELECTION_QUICK,
            )

        logger.info(
            "Escalating user %s to Tier 2 (%s) in context %s",
            snapshot.user_id,
            tier1.escalation_reason,
            context.value,
        )
        tier2 = await self._orchestrator.generate(
            snapshot,
            context,
            cache,
            direct_recommendations=direct,
            escalation_reason=tier1.escalation_reason,
        )
        merged = [*tier2.candidates, *direct]
        return self._outcome(
            TIER_GENERATIVE,
            merged,
            snapshot,
            context,
            started,
            tier0,
            tier1=tier1,
            tier2=tier2,
            selection=tier2.selection_method,
        )

    def _outcome(
        self,
        final_tier: int,
        candidates: Sequence[RecommendationCandidate],
        snapshot: UserStateSnapshot,
        context: RecommendationContext,
        started: float,
        tier0: RuleEvaluationResult,
        *,
        tier1: QuickAssessmentResult | None = None,
        tier2: OrchestrationResult | None = None,
        selection: str,
    ) -> TieredAssessmentOutcome:
        validated = self._validator.filter(candidates, snapshot)
        statistics = TierStatistics(
            rules_evaluated=tier0.rules_evaluated,
            rules_triggered=len(tier0.triggered_rules),
            direct_recommendations=len(tier0.direct_recommendations),
            combined_score=tier1.combined_score if tier1 else None,
            relevant_context_items=len(tier1.relevant_context) if tier1 else 0,
            generative_calls=tier2.generative_calls if tier2 else 0,
            selection_method=selection,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return TieredAssessmentOutcome(
            final_tier=final_tier,
            candidates=tuple(validated),
            context=context,
            statistics=statistics,
            tier0=tier0,
            tier1=tier1,
            tier2=tier2,
        )
