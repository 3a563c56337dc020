"""Data models for the coaching escalation pipeline."""

from datetime import datetime, timezone
import enum

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

# SQLAlchemy base
Base = declarative_base()


class SignalPriority(enum.IntEnum):
    """Signal priorities; lower values are processed first."""

    URGENT = 1
    WINDOW_ALIGNED = 2
    STANDARD = 3
    LOW = 4


class WindowType(str, enum.Enum):
    """Processing windows a signal can be aligned to."""

    IMMEDIATE = "Immediate"
    MORNING_WINDOW = "MorningWindow"
    EVENING_WINDOW = "EveningWindow"
    WEEKLY_REVIEW = "WeeklyReview"
    BATCH_WINDOW = "BatchWindow"


class SignalStatus(str, enum.Enum):
    """Lifecycle states for a queued signal."""

    PENDING = "Pending"
    PROCESSING = "Processing"
    PROCESSED = "Processed"
    SKIPPED = "Skipped"
    EXPIRED = "Expired"


class OutboxOperation(str, enum.Enum):
    """Entity change operations captured by the outbox."""

    CREATED = "Created"
    UPDATED = "Updated"
    DELETED = "Deleted"


class OutboxStatus(str, enum.Enum):
    """Lifecycle states for an outbox entry."""

    PENDING = "Pending"
    PROCESSING = "Processing"
    PROCESSED = "Processed"
    FAILED = "Failed"


SignalWindowTypeEnum = Enum(
    *[window.value for window in WindowType],
    name="signal_window_type",
    native_enum=False,
)
SignalStatusEnum = Enum(
    *[status.value for status in SignalStatus],
    name="signal_status",
    native_enum=False,
)
OutboxOperationEnum = Enum(
    *[operation.value for operation in OutboxOperation],
    name="outbox_operation",
    native_enum=False,
)
OutboxStatusEnum = Enum(
    *[status.value for status in OutboxStatus],
    name="outbox_status",
    native_enum=False,
)

LAST_ERROR_MAX_LENGTH = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SignalEntry(Base):
    """Queued domain signal awaiting tiered assessment."""

    __tablename__ = "signal_entries"
    __table_args__ = (
        Index(
            "ix_signal_entries_acquire",
            "status",
            "priority",
            "created_at",
        ),
        Index("ix_signal_entries_user_status", "user_id", "status"),
        Index("ix_signal_entries_lease", "status", "leased_until"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id = Column(String(200), nullable=False)
    event_type = Column(String(200), nullable=False)
    priority = Column(Integer, nullable=False)
    window_type = Column(SignalWindowTypeEnum, nullable=False)
    scheduled_window_start = Column(DateTime(timezone=True), nullable=True)
    target_entity_type = Column(String(100), nullable=True)
    target_entity_id = Column(String(100), nullable=True)
    status = Column(SignalStatusEnum, nullable=False, default=SignalStatus.PENDING.value)
    lease_holder = Column(String(200), nullable=True)
    leased_until = Column(DateTime(timezone=True), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(String(LAST_ERROR_MAX_LENGTH), nullable=True)
    processing_tier = Column(Integer, nullable=True)
    skip_reason = Column(String(LAST_ERROR_MAX_LENGTH), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)


class OutboxEntry(Base):
    """Captured entity change driving the embedding refresh pipeline."""

    __tablename__ = "outbox_entries"
    __table_args__ = (
        Index("ix_outbox_entries_acquire", "status", "retry_count", "created_at"),
        Index("ix_outbox_entries_processed", "status", "processed_at"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(String(100), nullable=False)
    operation = Column(OutboxOperationEnum, nullable=False)
    user_id = Column(String(200), nullable=True)
    status = Column(OutboxStatusEnum, nullable=False, default=OutboxStatus.PENDING.value)
    lease_holder = Column(String(200), nullable=True)
    leased_until = Column(DateTime(timezone=True), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(String(LAST_ERROR_MAX_LENGTH), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)


class SignalProcessingHistory(Base):
    """Audit row for one processed batch of a user's signals."""

    __tablename__ = "signal_processing_history"
    __table_args__ = (Index("ix_signal_history_user_completed", "user_id", "completed_at"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(String(200), nullable=False)
    window_type = Column(SignalWindowTypeEnum, nullable=True)
    signals_received = Column(Integer, nullable=False, default=0)
    signals_processed = Column(Integer, nullable=False, default=0)
    signals_skipped = Column(Integer, nullable=False, default=0)
    final_tier = Column(Integer, nullable=True)
    rules_triggered = Column(Integer, nullable=False, default=0)
    direct_recommendations = Column(Integer, nullable=False, default=0)
    combined_score = Column(Float, nullable=True)
    generative_calls = Column(Integer, nullable=False, default=0)
    selection_method = Column(String(100), nullable=True)
    recommendations_generated = Column(Integer, nullable=False, default=0)
    duration_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
