"""Drops candidates that reference entities absent from the snapshot."""

from __future__ import annotations

import json
import logging
from typing import Iterable, Mapping

from assessment.snapshot import UserStateSnapshot
from recommendations import ActionKind, RecommendationCandidate, TargetKind

logger = logging.getLogger(__name__)

PAYLOAD_ID_KINDS: Mapping[str, TargetKind] = {
    "taskId": TargetKind.TASK,
    "habitId": TargetKind.HABIT,
    "goalId": TargetKind.GOAL,
    "projectId": TargetKind.PROJECT,
    "metricId": TargetKind.METRIC,
    "metricDefinitionId": TargetKind.METRIC,
    "experimentId": TargetKind.EXPERIMENT,
    "suggestedNextTaskId": TargetKind.TASK,
    "newGoalId": TargetKind.GOAL,
}

UNBOUND_ACTIONS = frozenset({ActionKind.REFLECT_PROMPT, ActionKind.LEARN_PROMPT})


def snapshot_id_sets(snapshot: UserStateSnapshot) -> dict[TargetKind, frozenset[str]]:
    """Return the ids present in the snapshot, per entity kind."""
    return {
        TargetKind.TASK: frozenset(task.id for task in snapshot.tasks),
        TargetKind.HABIT: frozenset(habit.id for habit in snapshot.habits),
        TargetKind.GOAL: frozenset(goal.id for goal in snapshot.goals),
        TargetKind.PROJECT: frozenset(project.id for project in snapshot.projects),
        TargetKind.METRIC: frozenset(metric.id for metric in snapshot.metric_definitions),
        TargetKind.EXPERIMENT: frozenset(experiment.id for experiment in snapshot.experiments),
    }


class CandidateValidator:
    """Filters candidates against the run's snapshot; output only ever shrinks."""

    def filter(
        self,
        candidates: Iterable[RecommendationCandidate],
        snapshot: UserStateSnapshot,
    ) -> list[RecommendationCandidate]:
        id_sets = snapshot_id_sets(snapshot)
        kept: list[RecommendationCandidate] = []
        for candidate in candidates:
            reason = self.rejection_reason(candidate, id_sets)
            if reason is None:
                kept.append(candidate)
            else:
                logger.info(
                    "Dropping %s candidate %r for user %s: %s",
                    candidate.type.value,
                    candidate.title,
                    snapshot.user_id,
                    reason,
                )
        return kept

    def rejection_reason(
        self,
        candidate: RecommendationCandidate,
        id_sets: Mapping[TargetKind, frozenset[str]],
    ) -> str | None:
        """Return why a candidate is invalid, or None to keep it."""
        target = candidate.target
        if candidate.action_kind == ActionKind.CREATE and target.entity_id is None:
            return None
        if candidate.action_kind in UNBOUND_ACTIONS:
            return None
        if target.kind == TargetKind.USER_PROFILE:
            return self._payload_reason(candidate.action_payload, id_sets)
        if target.entity_id is None:
            return f"{candidate.action_kind.value} on {target.kind.value} without a target id"
        known = id_sets.get(target.kind, frozenset())
        if target.entity_id not in known:
            return f"unknown {target.kind.value} id {target.entity_id}"
        return self._payload_reason(candidate.action_payload, id_sets)

    def _payload_reason(
        self,
        payload: str | None,
        id_sets: Mapping[TargetKind, frozenset[str]],
    ) -> str | None:
        if payload is None:
            return None
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            return "unparseable action payload"
        if not isinstance(data, dict):
            return None
        for key, kind in PAYLOAD_ID_KINDS.items():
            value = data.get(key)
            if value is None:
                continue
            if str(value) not in id_sets.get(kind, frozenset()):
                return f"payload {key} {value} not found"
        return None
