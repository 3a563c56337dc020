"""Signal processing history used as the delta baseline and audit trail."""

from __future__ import annotations

from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import SignalProcessingHistory, WindowType
from time_utils import ensure_utc, optional_utc, utc_now


@dataclass(frozen=True)
class ProcessingRecord:
    """Summary of one processed signal batch."""

    user_id: str
    window_type: WindowType | None
    signals_received: int
    signals_processed: int
    signals_skipped: int
    final_tier: int | None
    rules_triggered: int = 0
    direct_recommendations: int = 0
    combined_score: float | None = None
    generative_calls: int = 0
    selection_method: str | None = None
    recommendations_generated: int = 0
    duration_ms: int | None = None
    error: str | None = None


def record_processing(
    session: Session,
    record: ProcessingRecord,
    *,
    started_at: datetime,
    completed_at: datetime | None = None,
) -> SignalProcessingHistory:
    """Persist a processing history row."""
    row = SignalProcessingHistory(
        user_id=record.user_id,
        window_type=record.window_type.value if record.window_type else None,
        signals_received=record.signals_received,
        signals_processed=record.signals_processed,
        signals_skipped=record.signals_skipped,
        final_tier=record.final_tier,
        rules_triggered=record.rules_triggered,
        direct_recommendations=record.direct_recommendations,
        combined_score=record.combined_score,
        generative_calls=record.generative_calls,
        selection_method=record.selection_method,
        recommendations_generated=record.recommendations_generated,
        duration_ms=record.duration_ms,
        error=record.error,
        started_at=ensure_utc(started_at),
        completed_at=ensure_utc(completed_at or utc_now()),
    )
    session.add(row)
    session.commit()
    return row


def get_last_assessment_time(session: Session, user_id: str) -> datetime | None:
    """Return when the user's last successful assessment completed."""
    completed_at = session.execute(
        select(SignalProcessingHistory.completed_at)
        .where(
            SignalProcessingHistory.user_id == user_id,
            SignalProcessingHistory.error.is_(None),
            SignalProcessingHistory.completed_at.is_not(None),
        )
        .order_by(SignalProcessingHistory.completed_at.desc())
        .limit(1)
    ).scalar()
    return optional_utc(completed_at)


class ProcessingHistoryStore:
    """Session-factory backed lookup of assessment baselines."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def last_assessment_time(self, user_id: str) -> datetime | None:
        """Return the last completed assessment time for the user."""
        with closing(self._session_factory()) as session:
            return get_last_assessment_time(session, user_id)
