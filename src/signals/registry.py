"""Event-type classification registry for signal routing."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from models import SignalPriority, WindowType

logger = logging.getLogger(__name__)

MISSED_HABIT_URGENT_THRESHOLD = 3
RESCHEDULED_TASK_URGENT_THRESHOLD = 3
SKIPPED_CHECK_IN_URGENT_THRESHOLD = 2

MORNING_WINDOW_START = "MorningWindowStart"
EVENING_WINDOW_START = "EveningWindowStart"
WEEKLY_REVIEW_START = "WeeklyReviewStart"

HABIT_MISSED = "HabitMissedEvent"
TASK_RESCHEDULED = "TaskRescheduledEvent"
CHECK_IN_SKIPPED = "CheckInSkippedEvent"


@dataclass(frozen=True)
class Classification:
    """Priority and processing window assigned to an event type."""

    priority: SignalPriority
    window_type: WindowType


Resolver = Callable[[Mapping[str, Any]], Classification]


def _check_in_skipped(payload: Mapping[str, Any]) -> Classification:
    """Align a skipped check-in with the window it belongs to."""
    kind = str(payload.get("check_in_type") or payload.get("type") or "").lower()
    window = WindowType.EVENING_WINDOW if kind == "evening" else WindowType.MORNING_WINDOW
    return Classification(SignalPriority.WINDOW_ALIGNED, window)


_WINDOW_ALIGNED: dict[str, WindowType] = {
    "MorningCheckInSubmittedEvent": WindowType.MORNING_WINDOW,
    "EveningCheckInSubmittedEvent": WindowType.EVENING_WINDOW,
    MORNING_WINDOW_START: WindowType.MORNING_WINDOW,
    EVENING_WINDOW_START: WindowType.EVENING_WINDOW,
    WEEKLY_REVIEW_START: WindowType.WEEKLY_REVIEW,
}

_STANDARD = (
    "HabitCompletedEvent",
    HABIT_MISSED,
    "HabitSkippedEvent",
    "HabitStreakMilestoneEvent",
    "TaskCompletedEvent",
    TASK_RESCHEDULED,
    "TaskStatusChangedEvent",
    "GoalStatusChangedEvent",
    "MetricObservationRecordedEvent",
    "ExperimentStartedEvent",
    "ExperimentCompletedEvent",
    "ProjectStatusChangedEvent",
)

_LOW = (
    "HabitCreatedEvent",
    "HabitUpdatedEvent",
    "HabitStatusChangedEvent",
    "HabitArchivedEvent",
    "GoalCreatedEvent",
    "GoalUpdatedEvent",
    "GoalScoreboardUpdatedEvent",
    "TaskCreatedEvent",
    "TaskUpdatedEvent",
    "TaskArchivedEvent",
    "ProjectCreatedEvent",
    "ProjectUpdatedEvent",
    "ExperimentCreatedEvent",
    "UserProfileUpdatedEvent",
    "SeasonCreatedEvent",
    "CheckInUpdatedEvent",
)

# Known events that never produce a signal.
_IGNORED = (
    "RecommendationGeneratedEvent",
    "RecommendationAcceptedEvent",
    "RecommendationDismissedEvent",
    "RecommendationSnoozedEvent",
    "MetricDefinitionCreatedEvent",
    "MetricDefinitionUpdatedEvent",
    "UserPreferencesUpdatedEvent",
    "ExperimentNoteAddedEvent",
)


@dataclass(frozen=True)
class EventRegistry:
    """Immutable event-type registry built once and injected where needed."""

    classifications: Mapping[str, Classification]
    resolvers: Mapping[str, Resolver] = field(default_factory=dict)
    ignored: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        overlap = set(self.classifications) & set(self.resolvers)
        overlap |= (set(self.classifications) | set(self.resolvers)) & set(self.ignored)
        if overlap:
            raise ValueError(f"event types registered more than once: {sorted(overlap)}")
        object.__setattr__(self, "classifications", MappingProxyType(dict(self.classifications)))
        object.__setattr__(self, "resolvers", MappingProxyType(dict(self.resolvers)))

    def classify(
        self,
        event_type: str,
        payload: Mapping[str, Any] | None = None,
    ) -> Classification | None:
        """Return the classification for an event type, or None if it is not a signal."""
        resolver = self.resolvers.get(event_type)
        if resolver is not None:
            return resolver(payload or {})
        return self.classifications.get(event_type)

    def registered_event_types(self) -> frozenset[str]:
        """Return every event type the registry knows about."""
        return frozenset(self.classifications) | frozenset(self.resolvers) | self.ignored

    def validate(self, known_event_types: Iterable[str]) -> list[str]:
        """Warn about known event types missing from the registry.

        Returns the unmapped types; never raises.
        """
        registered = self.registered_event_types()
        missing = sorted(set(known_event_types) - registered)
        for event_type in missing:
            logger.warning("Event type %s has no signal classification", event_type)
        return missing


def build_default_registry() -> EventRegistry:
    """Construct the standard event registry."""
    classifications: dict[str, Classification] = {}
    for event_type, window in _WINDOW_ALIGNED.items():
        classifications[event_type] = Classification(SignalPriority.WINDOW_ALIGNED, window)
    for event_type in _STANDARD:
        classifications[event_type] = Classification(
            SignalPriority.STANDARD, WindowType.BATCH_WINDOW
        )
    for event_type in _LOW:
        classifications[event_type] = Classification(SignalPriority.LOW, WindowType.BATCH_WINDOW)
    return EventRegistry(
        classifications=classifications,
        resolvers={CHECK_IN_SKIPPED: _check_in_skipped},
        ignored=frozenset(_IGNORED),
    )


def should_escalate_to_urgent(event_types: Iterable[str]) -> bool:
    """Return True when a set of signals forms an urgent drift pattern."""
    counts = Counter(event_types)
    missed = counts[HABIT_MISSED]
    rescheduled = counts[TASK_RESCHEDULED]
    skipped = counts[CHECK_IN_SKIPPED]
    if missed >= MISSED_HABIT_URGENT_THRESHOLD:
        return True
    if rescheduled >= RESCHEDULED_TASK_URGENT_THRESHOLD:
        return True
    return skipped >= SKIPPED_CHECK_IN_URGENT_THRESHOLD and missed >= 1


def humanize_event_type(event_type: str) -> str:
    """Turn ``HabitMissedEvent`` into ``habit missed``."""
    name = event_type[: -len("Event")] if event_type.endswith("Event") else event_type
    words: list[str] = []
    current = ""
    for char in name:
        if char.isupper() and current:
            words.append(current)
            current = char
        else:
            current += char
    if current:
        words.append(current)
    return " ".join(word.lower() for word in words)
