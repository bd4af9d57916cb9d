"""SQLModel ORM tables for the trial store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel


class TrialRecordRow(SQLModel, table=True):
    __tablename__ = "trial_records"  # type: ignore[bad-override]

    task_id: str = Field(primary_key=True)
    model_id: str = Field(primary_key=True, index=True)
    trial_index: int = Field(primary_key=True)
    status: str = Field(index=True)
    detail: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    log_ref: str | None = None
    recorded_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
