"""SQLModel ORM tables for the task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class QueueTask(SQLModel, table=True):
    __tablename__ = "queue_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "queue_name",
            "parameters",
            "task_key",
            name="uq_queue_tasks_partition_key",
        ),
        Index("idx_queue_tasks_claim", "queue_name", "parameters", "status", "lease_id"),
    )

    record_id: int | None = Field(default=None, primary_key=True)
    queue_name: str = Field(index=True)
    task_key: str
    parameters: str = Field(default="")
    data1: str | None = None
    data2: str | None = None
    data3: str | None = None
    status: str = Field(index=True)
    attempts: int = Field(default=0)
    max_attempts: int | None = None
    expires_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    lease_id: str | None = Field(default=None, index=True)
    error_status: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class QueueSession(SQLModel, table=True):
    __tablename__ = "queue_sessions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_sessions_expires", "expires_at"),)

    session_id: str = Field(primary_key=True)
    queue_name: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
