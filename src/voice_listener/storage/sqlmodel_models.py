"""SQLModel ORM tables for task storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_status_extracted", "status", "extracted_at"),)

    task_id: str = Field(primary_key=True)
    task_type: str = Field(index=True)
    subtype: str | None = None
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    extracted_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    result: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    error_category: str | None = Field(default=None, index=True)
    depends_on_id: str | None = Field(default=None, index=True)
    sequence_index: int | None = None
    messages: str | None = Field(default=None, sa_column=Column(Text))
    session_id: str | None = None
    cancel_requested: bool = Field(default=False)
    progress: str | None = Field(default=None, sa_column=Column(Text))
    log_file: str | None = None
    duration_ms: int | None = None
    tools_used: int | None = None
    prompt_version_id: str | None = Field(default=None, index=True)
    project_path: str | None = None
    deploy_url: str | None = None
    deploy_url_label: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    event_id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PromptVersionRow(SQLModel, table=True):
    __tablename__ = "prompt_versions"  # type: ignore[bad-override]

    version: str = Field(primary_key=True)
    content_hash: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    notes: str | None = Field(default=None, sa_column=Column(Text))
    total_runs: int | None = None
    avg_rating: float | None = None
    success_rate: float | None = None


class WorkerHeartbeatRow(SQLModel, table=True):
    __tablename__ = "worker_heartbeats"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    last_seen: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    status: str | None = None


class PushTokenRow(SQLModel, table=True):
    __tablename__ = "push_tokens"  # type: ignore[bad-override]

    token: str = Field(primary_key=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
