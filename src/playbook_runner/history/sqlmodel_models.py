"""SQLModel ORM tables for batch history."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel


class HistoryEntryRow(SQLModel, table=True):
    __tablename__ = "history_entries"  # type: ignore[bad-override]

    entry_id: str = Field(primary_key=True)
    entry_type: str = Field(index=True)
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    session_id: str = Field(index=True)
    project_path: str
    summary: str = Field(sa_column=Column(Text, nullable=False))
    full_response: str = Field(sa_column=Column(Text, nullable=False))
    success: bool
    elapsed_time_ms: int
    agent_session_id: str | None = Field(default=None)
    usage_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
