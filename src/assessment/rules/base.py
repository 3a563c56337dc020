"""Rule result types and the base class for deterministic Tier 0 rules."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Mapping, Sequence

from assessment.snapshot import UserStateSnapshot
from recommendations import RecommendationCandidate
from signals.queue import AcquiredSignal


class Severity(IntEnum):
    """Ordered rule severities."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


@dataclass(frozen=True)
class RuleResult:
    """Outcome of evaluating a single rule."""

    rule_id: str
    rule_name: str
    triggered: bool
    severity: Severity = Severity.LOW
    evidence: Mapping[str, Any] = field(default_factory=dict)
    direct_recommendation: RecommendationCandidate | None = None
    requires_escalation: bool = False


class DeterministicRule(ABC):
    """Pure rule evaluated against a snapshot and the acquired signal batch.

    Implementations must not perform I/O or keep mutable state, so rules can
    be evaluated in any order.
    """

    rule_id: str = ""
    rule_name: str = ""
    description: str = ""

    @abstractmethod
    def evaluate(
        self,
        snapshot: UserStateSnapshot,
        signals: Sequence[AcquiredSignal],
    ) -> RuleResult:
        """Evaluate the rule."""

    def not_triggered(self) -> RuleResult:
        return RuleResult(rule_id=self.rule_id, rule_name=self.rule_name, triggered=False)

    def triggered(
        self,
        severity: Severity,
        evidence: Mapping[str, Any],
        recommendation: RecommendationCandidate | None = None,
        *,
        requires_escalation: bool = False,
    ) -> RuleResult:
        return RuleResult(
            rule_id=self.rule_id,
            rule_name=self.rule_name,
            triggered=True,
            severity=severity,
            evidence=dict(evidence),
            direct_recommendation=recommendation,
            requires_escalation=requires_escalation,
        )


def has_signal(signals: Sequence[AcquiredSignal], *event_types: str) -> bool:
    """Return True if any signal in the batch has one of the event types."""
    wanted = set(event_types)
    return any(signal.event_type in wanted for signal in signals)
