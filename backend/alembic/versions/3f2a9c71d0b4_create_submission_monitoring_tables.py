"""create submission monitoring tables

Revision ID: 3f2a9c71d0b4
Revises:
Create Date: 2026-10-19 09:12:44.318201

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f2a9c71d0b4"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade schema."""
    # submissions is owned by the form workflow; only created where missing
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS submissions (
            id UUID PRIMARY KEY,
            project_id UUID NOT NULL,
            pathway VARCHAR(50),
            created_at TIMESTAMP WITH TIME ZONE NOT NULL
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_submissions_project_id ON submissions (project_id)")

    # Append-only event log
    op.create_table(
        "progress_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("submission_id", sa.Uuid(), nullable=False),
        sa.Column("stage", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_progress_events_submission_order",
        "progress_events",
        ["submission_id", "occurred_at", "id"],
        unique=False,
    )
    op.create_index(
        "ix_progress_events_stage_status",
        "progress_events",
        ["stage", "status", "occurred_at"],
        unique=False,
    )

    # Derived read model, rebuildable from progress_events
    op.create_table(
        "submission_snapshots",
        sa.Column("submission_id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("pathway", sa.String(length=50), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("latest_stage", sa.String(length=50), nullable=False),
        sa.Column("latest_stage_status", sa.String(length=20), nullable=False),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_event_id", sa.BigInteger(), nullable=True),
        sa.Column("first_event_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_events", sa.Integer(), nullable=False),
        sa.Column("last_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("submission_id"),
    )
    op.create_index(
        "ix_submission_snapshots_status_last_event",
        "submission_snapshots",
        ["status", "last_event_at"],
        unique=False,
    )
    op.create_index(
        "ix_submission_snapshots_project_last_event",
        "submission_snapshots",
        ["project_id", "last_event_at"],
        unique=False,
    )

    op.create_table(
        "retry_tasks",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("submission_id", sa.Uuid(), nullable=False),
        sa.Column("stage", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("trigger", sa.String(length=20), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_eligible_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_retry_tasks_submission_id"), "retry_tasks", ["submission_id"], unique=False)
    op.create_index("ix_retry_tasks_status_eligible", "retry_tasks", ["status", "next_eligible_at"], unique=False)
    # One queued/in_flight task per (submission, stage)
    op.create_index(
        "uq_retry_tasks_active_pair",
        "retry_tasks",
        ["submission_id", "stage"],
        unique=True,
        postgresql_where=sa.text("status IN ('queued', 'in_flight')"),
    )

    op.create_table(
        "health_check_records",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("component", sa.String(length=100), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("checked_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_health_check_records_component_checked",
        "health_check_records",
        ["component", "checked_at"],
        unique=False,
    )
    op.create_index(
        "ix_health_check_records_kind_checked",
        "health_check_records",
        ["kind", "checked_at"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_health_check_records_kind_checked", table_name="health_check_records")
    op.drop_index("ix_health_check_records_component_checked", table_name="health_check_records")
    op.drop_table("health_check_records")
    op.drop_index("uq_retry_tasks_active_pair", table_name="retry_tasks")
    op.drop_index("ix_retry_tasks_status_eligible", table_name="retry_tasks")
    op.drop_index(op.f("ix_retry_tasks_submission_id"), table_name="retry_tasks")
    op.drop_table("retry_tasks")
    op.drop_index("ix_submission_snapshots_project_last_event", table_name="submission_snapshots")
    op.drop_index("ix_submission_snapshots_status_last_event", table_name="submission_snapshots")
    op.drop_table("submission_snapshots")
    op.drop_index("ix_progress_events_stage_status", table_name="progress_events")
    op.drop_index("ix_progress_events_submission_order", table_name="progress_events")
    op.drop_table("progress_events")
    # submissions belongs to the form workflow and is left in place
