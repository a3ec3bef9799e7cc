"""SQLModel ORM tables for workflow task storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class WorkflowTask(SQLModel, table=True):
    __tablename__ = "workflow_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_workflow_tasks_parent_created", "parent_task_id", "created_at"),)

    task_id: str = Field(primary_key=True)
    title: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    plan: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    description: str = Field(
        default="",
        sa_column=Column(Text, nullable=False, server_default=""),
    )
    status: str = Field(index=True)
    workflow_variant: str = Field(index=True)
    current_step: int = Field(default=0)
    step_results_json: str = Field(
        default="{}",
        sa_column=Column(Text, nullable=False, server_default="{}"),
    )
    parent_task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("workflow_tasks.task_id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkflowTaskLog(SQLModel, table=True):
    __tablename__ = "workflow_task_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_workflow_task_logs_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("workflow_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    message: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkflowTaskEvent(SQLModel, table=True):
    __tablename__ = "workflow_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_workflow_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("workflow_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
