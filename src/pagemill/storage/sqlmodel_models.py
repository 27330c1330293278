"""SQLModel ORM tables for pipeline storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_status_created", "status", "created_at"),)

    task_id: str = Field(primary_key=True)
    filename: str
    doc_type: str = Field(default="")
    page_range: str = Field(default="")
    pages: int = Field(default=0)
    model: str = Field(default="")
    status: str = Field(index=True)
    progress: int = Field(default=0)
    worker_id: str | None = Field(default=None, index=True)
    completed_count: int = Field(default=0)
    failed_count: int = Field(default=0)
    error: str | None = Field(default=None, sa_column=Column(Text))
    merged_path: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskDetail(SQLModel, table=True):
    __tablename__ = "task_details"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "page", name="uq_task_details_task_page"),
        Index("idx_task_details_claim", "status", "retry_count", "page"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    page: int
    page_source: int
    status: str = Field(index=True)
    worker_id: str | None = Field(default=None, index=True)
    model: str = Field(default="")
    content: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    error: str | None = Field(default=None, sa_column=Column(Text))
    retry_count: int = Field(default=0)
    next_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)
    conversion_time_ms: int = Field(default=0)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
