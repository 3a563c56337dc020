"""Habit and check-in Tier 0 rules."""

from __future__ import annotations

import json
from typing import Sequence

from assessment.rules.base import DeterministicRule, RuleResult, Severity, has_signal
from assessment.snapshot import CheckInType, HabitMode, UserStateSnapshot
from recommendations import (
    ActionKind,
    RecommendationCandidate,
    RecommendationContext,
    RecommendationTarget,
    RecommendationType,
    TargetKind,
)
from signals.queue import AcquiredSignal
from signals.registry import EVENING_WINDOW_START, MORNING_WINDOW_START

ADHERENCE_CRITICAL_THRESHOLD = 0.25
ADHERENCE_WARNING_THRESHOLD = 0.5
SYSTEMIC_STRUGGLE_RATIO = 0.5


def streak_severity(streak: int) -> Severity:
    """Severity of putting a habit streak at risk."""
    if streak >= 21:
        return Severity.CRITICAL
    if streak >= 7:
        return Severity.HIGH
    if streak >= 3:
        return Severity.MEDIUM
    return Severity.LOW


def check_in_streak_severity(streak: int) -> Severity:
    """Severity of a missing check-in given the current check-in streak."""
    if streak >= 30:
        return Severity.CRITICAL
    if streak >= 14:
        return Severity.HIGH
    if streak >= 7:
        return Severity.MEDIUM
    return Severity.LOW


class HabitStreakBreakRule(DeterministicRule):
    """Detects streaks at risk of breaking today."""

    rule_id = "HABIT_STREAK_BREAK"
    rule_name = "Habit Streak Break Detection"
    description = "Detects scheduled habits not yet completed today that carry a streak."

    def evaluate(
        self,
        snapshot: UserStateSnapshot,
        signals: Sequence[AcquiredSignal],
    ) -> RuleResult:
        at_risk = [
            habit
            for habit in snapshot.active_habits
            if habit.current_streak > 0
            and habit.is_scheduled_today
            and not habit.is_completed_today
        ]
        if not at_risk:
            return self.not_triggered()
        habit = max(at_risk, key=lambda item: (item.current_streak, item.id))
        severity = streak_severity(habit.current_streak)
        evidence = {
            "at_risk_habit_count": len(at_risk),
            "habit_id": habit.id,
            "habit_title": habit.title,
            "current_streak": habit.current_streak,
        }
        recommendation = RecommendationCandidate(
            type=RecommendationType.NEXT_BEST_ACTION,
            target=RecommendationTarget(TargetKind.HABIT, habit.id, habit.title),
            action_kind=ActionKind.EXECUTE_TODAY,
            title=f'Protect your {habit.current_streak}-day "{habit.title}" streak',
            rationale=(
                f"You have kept this habit for {habit.current_streak} days and it is still "
                "open today. Even the minimum version keeps the streak alive."
            ),
            score=min(0.5 + habit.current_streak * 0.02, 0.95),
            context=RecommendationContext.DRIFT_ALERT,
            action_payload=json.dumps({"habitId": habit.id}),
            action_summary="Complete habit today",
        )
        return self.triggered(severity, evidence, recommendation)


class HabitAdherenceThresholdRule(DeterministicRule):
    """Detects habits whose weekly adherence has dropped below 50%."""

    rule_id = "HABIT_ADHERENCE_THRESHOLD"
    rule_name = "Habit Adherence Threshold"
    description = "Detects habits with adherence dropping below 50% over the past 7 days."

    def evaluate(
        self,
        snapshot: UserStateSnapshot,
        signals: Sequence[AcquiredSignal],
    ) -> RuleResult:
        active = snapshot.active_habits
        struggling = sorted(
            (habit for habit in active if habit.adherence_7day < ADHERENCE_WARNING_THRESHOLD),
            key=lambda habit: (habit.adherence_7day, habit.id),
        )
        if not struggling:
            return self.not_triggered()
        worst = struggling[0]
        if worst.adherence_7day <= ADHERENCE_CRITICAL_THRESHOLD:
            severity = Severity.HIGH
        else:
            severity = Severity.MEDIUM
        systemic = len(struggling) / len(active) > SYSTEMIC_STRUGGLE_RATIO
        percent = round(worst.adherence_7day * 100)
        evidence = {
            "struggling_habit_count": len(struggling),
            "active_habit_count": len(active),
            "worst_habit_id": worst.id,
            "worst_habit_title": worst.title,
            "worst_adherence": round(worst.adherence_7day * 100, 1),
            "worst_habit_mode": worst.mode.value,
        }
        at_minimum = worst.mode == HabitMode.MINIMUM
        recommendation = RecommendationCandidate(
            type=RecommendationType.HABIT_MODE_SUGGESTION,
            target=RecommendationTarget(TargetKind.HABIT, worst.id, worst.title),
            action_kind=ActionKind.REFLECT_PROMPT if at_minimum else ActionKind.UPDATE,
            title=(
                f'"{worst.title}" needs attention ({percent}% this week)'
                if at_minimum
                else f'Consider scaling down "{worst.title}" ({percent}% adherence)'
            ),
            rationale=(
                "Even at minimum mode this habit is slipping. Check whether it fits this "
                "season or whether an obstacle needs removing."
                if at_minimum
                else f"Adherence has dropped to {percent}%. Switching to minimum mode keeps "
                "the habit alive while momentum rebuilds."
            ),
            score=min(0.85 + (0.10 if at_minimum else 0.0), 0.95),
            context=RecommendationContext.DRIFT_ALERT,
            action_payload=None if at_minimum else json.dumps(
                {"habitId": worst.id, "newMode": HabitMode.MINIMUM.value}
            ),
            action_summary="Reflect on blockers" if at_minimum else "Scale to minimum mode",
        )
        return self.triggered(
            severity, evidence, recommendation, requires_escalation=systemic
        )


class CheckInMissingRule(DeterministicRule):
    """Detects a check-in window opening without a submitted check-in."""

    rule_id = "CHECK_IN_MISSING"
    rule_name = "Check-In Missing"
    description = "Detects morning or evening windows without a check-in."

    def evaluate(
        self,
        snapshot: UserStateSnapshot,
        signals: Sequence[AcquiredSignal],
    ) -> RuleResult:
        missing: CheckInType | None = None
        if has_signal(signals, MORNING_WINDOW_START) and snapshot.check_in_for(
            CheckInType.MORNING
        ) is None:
            missing = CheckInType.MORNING
        elif has_signal(signals, EVENING_WINDOW_START) and snapshot.check_in_for(
            CheckInType.EVENING
        ) is None:
            missing = CheckInType.EVENING
        if missing is None:
            return self.not_triggered()
        streak = snapshot.check_in_streak
        label = missing.value.lower()
        evidence = {"check_in_type": missing.value, "check_in_streak": streak}
        rationale = (
            f"Your {streak}-day check-in streak is on the line. A quick {label} check-in keeps it going."
            if streak > 0
            else f"A short {label} check-in helps the plan match how you actually feel today."
        )
        recommendation = RecommendationCandidate(
            type=RecommendationType.CHECK_IN_CONSISTENCY_NUDGE,
            target=RecommendationTarget(TargetKind.USER_PROFILE),
            action_kind=ActionKind.REFLECT_PROMPT,
            title=f"Time for your {label} check-in",
            rationale=rationale,
            score=min(0.5 + streak * 0.015, 0.9),
            context=(
                RecommendationContext.MORNING_CHECK_IN
                if missing == CheckInType.MORNING
                else RecommendationContext.EVENING_CHECK_IN
            ),
            action_summary=f"Complete {label} check-in",
        )
        return self.triggered(check_in_streak_severity(streak), evidence, recommendation)
