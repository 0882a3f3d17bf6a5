"""Conversation log and worker run history."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "conversation_messages",
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("content_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index(
        "ix_conversation_messages_role",
        "conversation_messages",
        ["role"],
    )

    op.create_table(
        "worker_runs",
        sa.Column("run_id", sa.Integer(), nullable=False),
        sa.Column("issue_id", sa.String(), nullable=False),
        sa.Column("endpoint_name", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", sa.String(), nullable=True),
        sa.Column("confirmed", sa.Boolean(), nullable=True),
        sa.Column("exit_code", sa.Integer(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_worker_runs_issue_id", "worker_runs", ["issue_id"])
    op.create_index("ix_worker_runs_outcome", "worker_runs", ["outcome"])
    op.create_index(
        "idx_worker_runs_issue_time",
        "worker_runs",
        ["issue_id", "started_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_worker_runs_issue_time", table_name="worker_runs")
    op.drop_index("ix_worker_runs_outcome", table_name="worker_runs")
    op.drop_index("ix_worker_runs_issue_id", table_name="worker_runs")
    op.drop_table("worker_runs")
    op.drop_index("ix_conversation_messages_role", table_name="conversation_messages")
    op.drop_table("conversation_messages")
