"""SQLModel ORM tables for manager state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class ConversationMessage(SQLModel, table=True):
    __tablename__ = "conversation_messages"  # type: ignore[bad-override]

    message_id: int | None = Field(default=None, primary_key=True)
    role: str = Field(index=True)
    content_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkerRun(SQLModel, table=True):
    __tablename__ = "worker_runs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_worker_runs_issue_time", "issue_id", "started_at"),)

    run_id: int | None = Field(default=None, primary_key=True)
    issue_id: str = Field(index=True)
    endpoint_name: str
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    outcome: str | None = Field(default=None, index=True)
    confirmed: bool | None = None
    exit_code: int | None = None
    message: str | None = Field(default=None, sa_column=Column(Text))
