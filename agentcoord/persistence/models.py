"""Data models for persisted workflow and worker state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..utils import utcnow

TERMINAL_STATUSES = ("completed", "failed", "archived")


class HistoryEntry(BaseModel):
    """One state transition. The initial entry has no ``from_state``."""

    from_state: Optional[str] = None
    to_state: str
    label: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)
    reference: Optional[str] = None


class WorkflowStateRecord(BaseModel):
    """Durable per-workflow document."""

    workflow_id: str
    workflow_type: Optional[str] = None
    state: str
    status: str = "active"
    payload: Dict[str, Any] = Field(default_factory=dict)
    history: List[HistoryEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class WorkerStatus(str, Enum):
    STARTING = "starting"
    ONLINE = "online"
    DEGRADED = "degraded"
    UNRESPONSIVE = "unresponsive"
    FAILED = "failed"
    RECOVERING = "recovering"
    ISOLATED = "isolated"
    OFFLINE = "offline"


class WorkerRecord(BaseModel):
    """Liveness view of one registered worker."""

    worker_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: WorkerStatus = WorkerStatus.STARTING
    status_reason: Optional[str] = None
    last_heartbeat: Optional[datetime] = None
    last_status_change: Optional[datetime] = None
    registered: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    metrics: Dict[str, Any] = Field(default_factory=dict)
    recovery_attempts: int = 0
    last_recovery_attempt: Optional[datetime] = None
    next_recovery_attempt: Optional[datetime] = None
    impact: Optional[str] = None

    @property
    def worker_type(self) -> str:
        return str(self.metadata.get("type") or self.worker_id)

    @property
    def critical(self) -> bool:
        return bool(self.metadata.get("critical", False))
