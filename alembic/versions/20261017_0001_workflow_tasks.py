"""Workflow task store baseline: tasks, logs and audit events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "workflow_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False, server_default=""),
        sa.Column("plan", sa.Text(), nullable=False, server_default=""),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("workflow_variant", sa.String(), nullable=False),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("step_results_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("parent_task_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["parent_task_id"],
            ["workflow_tasks.task_id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_workflow_tasks_status", "workflow_tasks", ["status"])
    op.create_index("ix_workflow_tasks_workflow_variant", "workflow_tasks", ["workflow_variant"])
    op.create_index(
        "idx_workflow_tasks_parent_created",
        "workflow_tasks",
        ["parent_task_id", "created_at"],
    )

    op.create_table(
        "workflow_task_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["workflow_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_task_logs_task_id", "workflow_task_logs", ["task_id"])
    op.create_index(
        "idx_workflow_task_logs_task_time",
        "workflow_task_logs",
        ["task_id", "created_at"],
    )

    op.create_table(
        "workflow_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["workflow_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_task_events_task_id", "workflow_task_events", ["task_id"])
    op.create_index("ix_workflow_task_events_event_type", "workflow_task_events", ["event_type"])
    op.create_index("ix_workflow_task_events_status_from", "workflow_task_events", ["status_from"])
    op.create_index("ix_workflow_task_events_status_to", "workflow_task_events", ["status_to"])
    op.create_index(
        "idx_workflow_task_events_task_time",
        "workflow_task_events",
        ["task_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("workflow_task_events")
    op.drop_table("workflow_task_logs")
    op.drop_table("workflow_tasks")
