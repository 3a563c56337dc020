"""Tier 0 rule engine: evaluates every rule and aggregates the findings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

from assessment.rules.base import DeterministicRule, RuleResult, Severity
from assessment.snapshot import UserStateSnapshot
from recommendations import ActionKind, RecommendationCandidate
from signals.queue import AcquiredSignal

logger = logging.getLogger(__name__)

HIGH_SEVERITY_ESCALATION_COUNT = 2
TRIGGERED_ESCALATION_COUNT = 4


@dataclass(frozen=True)
class RuleEvaluationResult:
    """Aggregate of every rule result for one run."""

    max_severity: Severity | None
    triggered_rules: tuple[RuleResult, ...]
    direct_recommendations: tuple[RecommendationCandidate, ...]
    rules_evaluated: int
    should_escalate: bool = False
    escalation_reason: str | None = None

    @property
    def any_requires_escalation(self) -> bool:
        return any(result.requires_escalation for result in self.triggered_rules)

    @property
    def triggered_rule_names(self) -> list[str]:
        return [result.rule_name for result in self.triggered_rules]


class RuleEngine:
    """Runs deterministic rules against a snapshot and signal batch."""

    def __init__(self, rules: Iterable[DeterministicRule]) -> None:
        self._rules = tuple(rules)

    @property
    def rules(self) -> tuple[DeterministicRule, ...]:
        return self._rules

    def evaluate(
        self,
        snapshot: UserStateSnapshot,
        signals: Sequence[AcquiredSignal],
    ) -> RuleEvaluationResult:
        results = [self._evaluate_one(rule, snapshot, signals) for rule in self._rules]
        triggered = tuple(result for result in results if result.triggered)
        recommendations = tuple(
            result.direct_recommendation
            for result in triggered
            if result.direct_recommendation is not None
        )
        max_severity = max((result.severity for result in triggered), default=None)
        reason = escalation_reason(triggered, recommendations)
        if triggered:
            logger.debug(
                "Tier 0 for user %s: %s of %s rules triggered (max severity %s)",
                snapshot.user_id,
                len(triggered),
                len(results),
                max_severity.name if max_severity else None,
            )
        return RuleEvaluationResult(
            max_severity=max_severity,
            triggered_rules=triggered,
            direct_recommendations=recommendations,
            rules_evaluated=len(results),
            should_escalate=reason is not None,
            escalation_reason=reason,
        )

    def _evaluate_one(
        self,
        rule: DeterministicRule,
        snapshot: UserStateSnapshot,
        signals: Sequence[AcquiredSignal],
    ) -> RuleResult:
        try:
            return rule.evaluate(snapshot, signals)
        except Exception as exc:
            logger.error(
                "Rule %s failed for user %s: %s", rule.rule_id, snapshot.user_id, exc,
                exc_info=True,
            )
            return RuleResult(
                rule_id=rule.rule_id,
                rule_name=rule.rule_name,
                triggered=False,
                severity=Severity.LOW,
                evidence={"error": str(exc)},
            )


def escalation_reason(
    triggered: Sequence[RuleResult],
    recommendations: Sequence[RecommendationCandidate],
) -> str | None:
    """Return why Tier 0 findings need a more expensive tier, or None."""
    requesting = [result.rule_name for result in triggered if result.requires_escalation]
    if requesting:
        return f"Rule requested escalation: {', '.join(requesting)}"
    severe = [result for result in triggered if result.severity >= Severity.HIGH]
    if len(severe) >= HIGH_SEVERITY_ESCALATION_COUNT:
        return f"{len(severe)} high-severity issues detected"
    if has_conflicting_recommendations(recommendations):
        return "Conflicting direct recommendations"
    if len(triggered) >= TRIGGERED_ESCALATION_COUNT:
        return f"{len(triggered)} rules triggered"
    return None


def has_conflicting_recommendations(recommendations: Sequence[RecommendationCandidate]) -> bool:
    """Return True when direct recommendations pull in different directions."""
    kinds = {candidate.action_kind for candidate in recommendations}
    if ActionKind.EXECUTE_TODAY in kinds and ActionKind.DEFER in kinds:
        return True
    by_target: dict[tuple[str, str], set[ActionKind]] = {}
    for candidate in recommendations:
        if candidate.target.entity_id is None:
            continue
        key = (candidate.target.kind.value, candidate.target.entity_id)
        by_target.setdefault(key, set()).add(candidate.action_kind)
    return any(len(actions) > 1 for actions in by_target.values())
