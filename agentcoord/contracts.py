"""Message envelope and payload contracts exchanged over the bus."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BusMessage(BaseModel):
    """Envelope exchanged over the bus. ``data`` holds the wire payload."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    channel: str
    routing_key: str
    correlation_id: Optional[str] = None
    reply_to: Optional[str] = None
    source: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)
    data: Dict[str, Any] = Field(default_factory=dict)
    schema_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "BusMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)


class WirePayload(BaseModel):
    """Payload with camelCase keys on the wire and snake_case attributes."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ----------------------------------------------------------------------
# Coordinator -> worker commands


class ExecuteTask(WirePayload):
    workflow_id: str
    task_id: str
    task_type: str
    workflow_type: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class RetryTask(WirePayload):
    task_id: Optional[str] = None
    original_data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)


class RestartCommand(WirePayload):
    module_id: Optional[str] = None
    optimize_resources: Optional[bool] = None
    resource_config: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_now)


class FallbackCommand(WirePayload):
    fallback_method: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)


class RecoverCommand(WirePayload):
    worker_id: str
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class DelegationCommand(WirePayload):
    original_worker_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    delegation_reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


# ----------------------------------------------------------------------
# Worker -> coordinator events


class Heartbeat(WirePayload):
    worker_id: str
    status: str = "online"
    metrics: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None


class StatusChanged(WirePayload):
    worker_id: str
    status: str
    reason: Optional[str] = None
    previous_status: Optional[str] = None
    timestamp: Optional[datetime] = None


class WorkerRegistration(WirePayload):
    worker_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: Optional[str] = None


class TaskCompleted(WirePayload):
    workflow_id: str
    task_id: Optional[str] = None
    task_type: Optional[str] = None
    result: Dict[str, Any] = Field(default_factory=dict)
    transition_type: Optional[str] = None
    worker_id: Optional[str] = None


class TaskFailed(WirePayload):
    workflow_id: Optional[str] = None
    task_id: Optional[str] = None
    task_type: Optional[str] = None
    error: Union[str, Dict[str, Any], None] = None
    category: str = "internal"
    worker_id: Optional[str] = None
    module_id: Optional[str] = None


class WorkerFailed(WirePayload):
    worker_id: str
    module_id: Optional[str] = None
    error: Union[str, Dict[str, Any], None] = None
    category: str = "agent"
    data: Dict[str, Any] = Field(default_factory=dict)


class Notification(WirePayload):
    type: str
    level: str = "info"
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


def error_text(error: Union[str, Dict[str, Any], None]) -> str:
    """Flatten an error field that may be a string or an envelope body."""
    if error is None:
        return "unknown error"
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)
