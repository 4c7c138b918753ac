"""Create task queue and lease session tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "queue_tasks",
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("task_key", sa.String(), nullable=False),
        sa.Column("parameters", sa.String(), nullable=False, server_default=""),
        sa.Column("data1", sa.String(), nullable=True),
        sa.Column("data2", sa.String(), nullable=True),
        sa.Column("data3", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_id", sa.String(), nullable=True),
        sa.Column("error_status", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("record_id"),
        sa.UniqueConstraint(
            "queue_name",
            "parameters",
            "task_key",
            name="uq_queue_tasks_partition_key",
        ),
    )
    op.create_index("ix_queue_tasks_queue_name", "queue_tasks", ["queue_name"], unique=False)
    op.create_index("ix_queue_tasks_status", "queue_tasks", ["status"], unique=False)
    op.create_index("ix_queue_tasks_lease_id", "queue_tasks", ["lease_id"], unique=False)
    op.create_index(
        "idx_queue_tasks_claim",
        "queue_tasks",
        ["queue_name", "parameters", "status", "lease_id"],
        unique=False,
    )

    op.create_table(
        "queue_sessions",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("session_id"),
    )
    op.create_index(
        "ix_queue_sessions_queue_name",
        "queue_sessions",
        ["queue_name"],
        unique=False,
    )
    op.create_index("idx_queue_sessions_expires", "queue_sessions", ["expires_at"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_queue_sessions_expires", table_name="queue_sessions")
    op.drop_index("ix_queue_sessions_queue_name", table_name="queue_sessions")
    op.drop_table("queue_sessions")
    op.drop_index("idx_queue_tasks_claim", table_name="queue_tasks")
    op.drop_index("ix_queue_tasks_lease_id", table_name="queue_tasks")
    op.drop_index("ix_queue_tasks_status", table_name="queue_tasks")
    op.drop_index("ix_queue_tasks_queue_name", table_name="queue_tasks")
    op.drop_table("queue_tasks")
