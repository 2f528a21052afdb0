from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


class WorkerHealthRow(SQLModel, table=True):
    """Persisted liveness record of one worker."""

    __tablename__ = "worker_health"

    worker_id: str = Field(primary_key=True)
    status: str = Field(default="starting", index=True)
    reason: Optional[str] = None
    metrics: dict = Field(default_factory=dict, sa_column=Column(JSON))
    metadata_: dict = Field(
        default_factory=dict, sa_column=Column("metadata", JSON)
    )
    last_heartbeat: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), index=True)
    )
    last_status_change: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    recovery_attempts: int = 0
    last_recovery_attempt: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    next_recovery_attempt: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    impact: Optional[str] = None
    registered: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_updated: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
