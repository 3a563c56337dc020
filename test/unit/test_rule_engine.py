"""Unit tests for the Tier 0 rule engine."""

from __future__ import annotations

import logging

from assessment.rules import RuleEngine, default_rules
from assessment.rules.base import DeterministicRule, RuleResult, Severity
from assessment.rules.engine import escalation_reason, has_conflicting_recommendations
from assessment.snapshot import TaskSnapshot, TaskStatus
from recommendations import (
    ActionKind,
    RecommendationCandidate,
    RecommendationTarget,
    RecommendationType,
    TargetKind,
)
from test.helpers.coach_builders import days_ago, make_snapshot


class _ExplodingRule(DeterministicRule):
    rule_id = "EXPLODING"
    rule_name = "Exploding Rule"

    def evaluate(self, snapshot, signals) -> RuleResult:
        raise KeyError("missing field")


class _FixedRule(DeterministicRule):
    def __init__(
        self,
        name: str,
        severity: Severity,
        *,
        escalate: bool = False,
        recommendation: RecommendationCandidate | None = None,
    ) -> None:
        self.rule_id = name.upper()
        self.rule_name = name
        self._severity = severity
        self._escalate = escalate
        self._recommendation = recommendation

    def evaluate(self, snapshot, signals) -> RuleResult:
        return self.triggered(
            self._severity,
            {},
            self._recommendation,
            requires_escalation=self._escalate,
        )


def _candidate(action_kind: ActionKind, entity_id: str | None = "task-1") -> RecommendationCandidate:
    return RecommendationCandidate(
        type=RecommendationType.NEXT_BEST_ACTION,
        target=RecommendationTarget(TargetKind.TASK, entity_id),
        action_kind=action_kind,
        title="Do the thing",
        rationale="Because it matters.",
        score=0.6,
    )


def test_failing_rule_records_error_and_continues(caplog) -> None:
    """Ensure an exception in one rule does not stop the others."""
    engine = RuleEngine([_ExplodingRule(), _FixedRule("Steady", Severity.LOW)])

    with caplog.at_level(logging.ERROR, logger="assessment.rules.engine"):
        result = engine.evaluate(make_snapshot(), [])

    assert result.rules_evaluated == 2
    assert result.triggered_rule_names == ["Steady"]
    assert "EXPLODING" in caplog.text
    failing = engine._evaluate_one(_ExplodingRule(), make_snapshot(), [])
    assert failing.triggered is False
    assert "missing field" in failing.evidence["error"]


def test_quiet_snapshot_triggers_nothing() -> None:
    """Ensure an empty snapshot produces no findings and no escalation."""
    result = RuleEngine(default_rules()).evaluate(make_snapshot(), [])

    assert result.max_severity is None
    assert result.triggered_rules == ()
    assert result.should_escalate is False
    assert result.rules_evaluated == 9


def test_engine_collects_direct_recommendations() -> None:
    """Ensure triggered rules contribute their direct recommendations."""
    snapshot = make_snapshot(
        tasks=(
            TaskSnapshot(
                id="task-1",
                title="Old chore",
                status=TaskStatus.READY,
                due_date=days_ago(4),
            ),
        )
    )

    result = RuleEngine(default_rules()).evaluate(snapshot, [])

    assert result.triggered_rule_names == ["Task Overdue"]
    assert result.max_severity == Severity.MEDIUM
    assert len(result.direct_recommendations) == 1
    assert result.should_escalate is False


def test_rule_requested_escalation_takes_precedence() -> None:
    """Ensure a rule asking for escalation is named in the reason."""
    engine = RuleEngine([_FixedRule("Backlog", Severity.MEDIUM, escalate=True)])

    result = engine.evaluate(make_snapshot(), [])

    assert result.should_escalate is True
    assert result.any_requires_escalation is True
    assert result.escalation_reason == "Rule requested escalation: Backlog"


def test_two_high_severity_findings_escalate() -> None:
    """Ensure two high-severity findings need a more expensive tier."""
    engine = RuleEngine(
        [_FixedRule("One", Severity.HIGH), _FixedRule("Two", Severity.CRITICAL)]
    )

    result = engine.evaluate(make_snapshot(), [])

    assert result.escalation_reason == "2 high-severity issues detected"
    assert result.max_severity == Severity.CRITICAL


def test_many_triggered_rules_escalate() -> None:
    """Ensure four low-severity findings escalate by volume."""
    triggered = [
        RuleResult(rule_id=f"R{index}", rule_name=f"Rule {index}", triggered=True)
        for index in range(4)
    ]

    assert escalation_reason(triggered, []) == "4 rules triggered"
    assert escalation_reason(triggered[:3], []) is None


def test_conflicting_recommendations_escalate() -> None:
    """Ensure opposing actions on the same target escalate."""
    conflicting = [_candidate(ActionKind.UPDATE), _candidate(ActionKind.REMOVE)]

    assert has_conflicting_recommendations(conflicting) is True
    assert escalation_reason([], conflicting) == "Conflicting direct recommendations"


def test_execute_today_and_defer_conflict_across_targets() -> None:
    """Ensure doing and deferring in the same batch is a conflict."""
    candidates = [
        _candidate(ActionKind.EXECUTE_TODAY, "task-1"),
        _candidate(ActionKind.DEFER, "task-2"),
    ]

    assert has_conflicting_recommendations(candidates) is True


def test_untargeted_recommendations_do_not_conflict() -> None:
    """Ensure recommendations without an entity id are not grouped."""
    candidates = [_candidate(ActionKind.UPDATE, None), _candidate(ActionKind.REMOVE, None)]

    assert has_conflicting_recommendations(candidates) is False
