"""Create signal queue, outbox, and processing history tables.

Revision ID: 0001_signal_pipeline
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_signal_pipeline"
down_revision = None
branch_labels = None
depends_on = None

_WINDOW_TYPES = ("Immediate", "MorningWindow", "EveningWindow", "WeeklyReview", "BatchWindow")
_SIGNAL_STATUSES = ("Pending", "Processing", "Processed", "Skipped", "Expired")
_OUTBOX_OPERATIONS = ("Created", "Updated", "Deleted")
_OUTBOX_STATUSES = ("Pending", "Processing", "Processed", "Failed")


def _enum(values: tuple[str, ...], name: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False)


def upgrade() -> None:
    """Create the queue, outbox, and history tables with their lookup indexes."""
    op.create_table(
        "signal_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(length=200), nullable=False),
        sa.Column("event_type", sa.String(length=200), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("window_type", _enum(_WINDOW_TYPES, "signal_window_type"), nullable=False),
        sa.Column("scheduled_window_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("target_entity_type", sa.String(length=100), nullable=True),
        sa.Column("target_entity_id", sa.String(length=100), nullable=True),
        sa.Column("status", _enum(_SIGNAL_STATUSES, "signal_status"), nullable=False),
        sa.Column("lease_holder", sa.String(length=200), nullable=True),
        sa.Column("leased_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        sa.Column("processing_tier", sa.Integer(), nullable=True),
        sa.Column("skip_reason", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_signal_entries_acquire",
        "signal_entries",
        ["status", "priority", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_signal_entries_user_status", "signal_entries", ["user_id", "status"], unique=False
    )
    op.create_index(
        "ix_signal_entries_lease", "signal_entries", ["status", "leased_until"], unique=False
    )

    op.create_table(
        "outbox_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.String(length=100), nullable=False),
        sa.Column("operation", _enum(_OUTBOX_OPERATIONS, "outbox_operation"), nullable=False),
        sa.Column("user_id", sa.String(length=200), nullable=True),
        sa.Column("status", _enum(_OUTBOX_STATUSES, "outbox_status"), nullable=False),
        sa.Column("lease_holder", sa.String(length=200), nullable=True),
        sa.Column("leased_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_outbox_entries_acquire",
        "outbox_entries",
        ["status", "retry_count", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_outbox_entries_processed",
        "outbox_entries",
        ["status", "processed_at"],
        unique=False,
    )

    op.create_table(
        "signal_processing_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=200), nullable=False),
        sa.Column("window_type", _enum(_WINDOW_TYPES, "signal_window_type"), nullable=True),
        sa.Column("signals_received", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("signals_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("signals_skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("final_tier", sa.Integer(), nullable=True),
        sa.Column("rules_triggered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("direct_recommendations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("combined_score", sa.Float(), nullable=True),
        sa.Column("generative_calls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("selection_method", sa.String(length=100), nullable=True),
        sa.Column(
            "recommendations_generated", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_signal_history_user_completed",
        "signal_processing_history",
        ["user_id", "completed_at"],
        unique=False,
    )


def downgrade() -> None:
    """Drop the signal pipeline tables."""
    op.drop_index("ix_signal_history_user_completed", table_name="signal_processing_history")
    op.drop_table("signal_processing_history")
    op.drop_index("ix_outbox_entries_processed", table_name="outbox_entries")
    op.drop_index("ix_outbox_entries_acquire", table_name="outbox_entries")
    op.drop_table("outbox_entries")
    op.drop_index("ix_signal_entries_lease", table_name="signal_entries")
    op.drop_index("ix_signal_entries_user_status", table_name="signal_entries")
    op.drop_index("ix_signal_entries_acquire", table_name="signal_entries")
    op.drop_table("signal_entries")
