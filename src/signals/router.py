"""Route captured domain events into the signal queue."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Mapping

from sqlalchemy.orm import Session

from models import SignalEntry, SignalPriority, WindowType
from signals.queue import enqueue_signal, get_pending_event_types
from signals.registry import EventRegistry, should_escalate_to_urgent
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

URGENT_PATTERN_LOOKBACK = timedelta(hours=24)


def route_event(
    session: Session,
    registry: EventRegistry,
    *,
    user_id: str,
    event_type: str,
    target_entity_type: str | None = None,
    target_entity_id: str | None = None,
    payload: Mapping[str, Any] | None = None,
    scheduled_window_start: datetime | None = None,
    now: datetime | None = None,
) -> SignalEntry | None:
    """Classify an event and enqueue it as a signal.

    Returns None for events the registry does not treat as signals. When the
    user's recent pending signals plus this one form an urgent pattern, the
    signal is promoted to Urgent/Immediate.
    """
    classification = registry.classify(event_type, payload)
    if classification is None:
        logger.debug("Event %s for user=%s is not a signal", event_type, user_id)
        return None

    now = ensure_utc(now or utc_now())
    priority = classification.priority
    window_type = classification.window_type
    if priority != SignalPriority.URGENT:
        recent = get_pending_event_types(
            session, user_id, within=URGENT_PATTERN_LOOKBACK, now=now
        )
        if should_escalate_to_urgent([*recent, event_type]):
            logger.info(
                "Urgent pattern detected for user=%s on %s; promoting signal",
                user_id,
                event_type,
            )
            priority = SignalPriority.URGENT
            window_type = WindowType.IMMEDIATE
            scheduled_window_start = None

    return enqueue_signal(
        session,
        user_id=user_id,
        event_type=event_type,
        priority=priority,
        window_type=window_type,
        target_entity_type=target_entity_type,
        target_entity_id=target_entity_id,
        scheduled_window_start=scheduled_window_start,
        now=now,
    )
